from __future__ import annotations

import pytest
from sqlalchemy import select

from reseller_billing.models.ledger import LedgerAction
from reseller_billing.models.reseller import ResellerStatus, ResellerType
from reseller_billing.models.reseller_config import ConfigStatus
from reseller_billing.models.transaction import Transaction, TransactionStatus, TransactionType
from reseller_billing.services.config_meta import read_meta
from reseller_billing.services.errors import BillingValidationError, NotFoundError
from reseller_billing.services.gateways.base import PaymentGatewayError
from reseller_billing.services.ledger import find_chain_breaks, list_entries
from reseller_billing.services.payments import (
    ALREADY_COMPLETED,
    ALREADY_FAILED,
    CREDITED,
    FAILED,
    IGNORED,
    NOT_FOUND,
    PENDING,
    approve_card_deposit,
    handle_starsefar_webhook,
    handle_tetra98_callback,
    mark_failed,
    mark_paid,
    poll_starsefar_order,
    reject_card_deposit,
    sanitize_payload,
)

GIB = 1024 ** 3


class FakeTetra98:
    def __init__(self, response=None, error: Exception | None = None):
        self.response = response or {"status": "100"}
        self.error = error
        self.verified: list[str] = []

    async def verify(self, authority):
        self.verified.append(authority)
        if self.error:
            raise self.error
        return self.response


class FakeStarsefar:
    def __init__(self, response=None, error: Exception | None = None):
        self.response = response or {}
        self.error = error

    async def check_order(self, order_id):
        if self.error:
            raise self.error
        return self.response


async def test_mark_paid_credits_once(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=1000)
    txn = await factory.deposit(reseller, 5000, gateway="starsefar", gateway_reference="o-1")

    first = await mark_paid(db, txn.id, {"status": "completed"}, billing, gateway)
    second = await mark_paid(db, txn.id, {"status": "completed"}, billing, gateway)

    assert first.status == CREDITED
    assert second.status == ALREADY_COMPLETED
    await db.refresh(reseller)
    await db.refresh(txn)
    assert reseller.wallet_balance == 6000
    assert txn.status == TransactionStatus.completed
    assert txn.callback_received_at is not None
    assert txn.meta["gateway_response"] == {"status": "completed"}

    entries = await list_entries(db, reseller.id)
    assert len(entries) == 1
    assert entries[0].action_type == LedgerAction.wallet_credit
    assert entries[0].amount_charged == -5000
    assert (entries[0].wallet_balance_before, entries[0].wallet_balance_after) == (1000, 6000)
    assert find_chain_breaks(entries) == []


async def test_traffic_deposit_adds_bytes_not_balance(db, factory, billing, gateway):
    reseller = await factory.reseller(type=ResellerType.traffic, traffic_total_bytes=GIB, wallet_balance=0)
    txn = await factory.deposit(reseller, 7500, meta={"deposit_mode": "traffic", "traffic_gb": 10})

    out = await mark_paid(db, txn.id, {}, billing, gateway)

    assert out.status == CREDITED
    await db.refresh(reseller)
    await db.refresh(txn)
    assert reseller.traffic_total_bytes == 11 * GIB
    assert reseller.wallet_balance == 0
    assert txn.meta["rate_per_gb"] == 750
    assert await list_entries(db, reseller.id) == []

    q = await db.execute(select(Transaction).where(Transaction.type == TransactionType.purchase))
    purchases = q.scalars().all()
    assert len(purchases) == 1
    purchase = purchases[0]
    assert purchase.reseller_id == reseller.id
    assert purchase.status == TransactionStatus.completed
    assert purchase.amount == 7500
    assert purchase.meta["deposit_mode"] == "traffic"
    assert purchase.meta["traffic_gb"] == 10
    assert purchase.meta["rate_per_gb"] == 750
    assert purchase.meta["computed_amount_toman"] == 7500
    assert purchase.meta["source_transaction_id"] == txn.id
    assert txn.meta["traffic_topup"] == {
        "transaction_id": purchase.id,
        "traffic_gb": 10,
        "credited_bytes": 10 * GIB,
        "amount_toman": 7500,
    }

    again = await mark_paid(db, txn.id, {}, billing, gateway)

    assert again.status == ALREADY_COMPLETED
    q = await db.execute(select(Transaction).where(Transaction.type == TransactionType.purchase))
    assert len(q.scalars().all()) == 1
    await db.refresh(reseller)
    assert reseller.traffic_total_bytes == 11 * GIB


async def test_traffic_deposit_without_volume_is_rejected(db, factory, billing, gateway):
    reseller = await factory.reseller(type=ResellerType.traffic)
    txn = await factory.deposit(reseller, 7500, meta={"deposit_mode": "traffic"})

    with pytest.raises(BillingValidationError):
        await mark_paid(db, txn.id, {}, billing, gateway)

    await db.refresh(txn)
    assert txn.status == TransactionStatus.pending


async def test_failed_transaction_is_never_credited(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=0)
    txn = await factory.deposit(reseller, 5000)

    failed = await mark_failed(db, txn.id, {"status": "-1"}, "cancelled")
    again = await mark_paid(db, txn.id, {}, billing, gateway)

    assert failed.status == FAILED
    assert again.status == ALREADY_FAILED
    await db.refresh(reseller)
    await db.refresh(txn)
    assert reseller.wallet_balance == 0
    assert txn.meta["failure_reason"] == "cancelled"


async def test_mark_paid_rejects_non_deposits(db, factory, billing, gateway):
    reseller = await factory.reseller()
    txn = await factory.deposit(reseller, 100, type=TransactionType.purchase)

    with pytest.raises(BillingValidationError):
        await mark_paid(db, txn.id, {}, billing, gateway)
    with pytest.raises(NotFoundError):
        await mark_paid(db, 9999, {}, billing, gateway)


async def test_deposit_reactivates_and_reenables_configs(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller(wallet_balance=-5000, status=ResellerStatus.suspended_wallet)
    panel = await factory.panel()
    marker = {"disabled_by_wallet_suspension": True, "suspension_cycle_at": "2025-01-01T00:00:00+00:00"}
    configs = [await factory.config(reseller, panel, status=ConfigStatus.disabled, meta=dict(marker)) for _ in range(3)]
    panel_client.always_fail.add(configs[2].panel_user_id)
    txn = await factory.deposit(reseller, 10000)

    out = await mark_paid(db, txn.id, {}, billing, gateway)

    assert out.status == CREDITED
    assert out.reactivated == "wallet"
    assert (out.reenable.enabled, out.reenable.failed) == (2, 1)
    assert out.as_dict()["reenable"] == {"enabled": 2, "failed": 1}
    await db.refresh(reseller)
    assert reseller.status == ResellerStatus.active
    assert reseller.wallet_balance == 5000
    statuses = []
    for cfg in configs:
        await db.refresh(cfg)
        statuses.append(cfg.status)
    assert statuses == [ConfigStatus.active, ConfigStatus.active, ConfigStatus.disabled]
    assert read_meta(configs[2]).disabled_by_wallet_suspension is True


async def test_deposit_below_reactivation_balance_keeps_suspension(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller(wallet_balance=-5000, status=ResellerStatus.suspended_wallet)
    txn = await factory.deposit(reseller, 3000)

    out = await mark_paid(db, txn.id, {}, billing, gateway)

    assert out.reactivated is None
    assert out.reenable is None
    await db.refresh(reseller)
    assert reseller.status == ResellerStatus.suspended_wallet
    assert reseller.wallet_balance == -2000


async def test_auto_reenable_can_be_switched_off(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller(wallet_balance=-5000, status=ResellerStatus.suspended_wallet)
    panel = await factory.panel()
    await factory.config(reseller, panel, status=ConfigStatus.disabled, meta={"disabled_by_wallet_suspension": True})
    txn = await factory.deposit(reseller, 10000)

    out = await mark_paid(db, txn.id, {}, billing.with_overrides(auto_reenable_enabled=False), gateway)

    assert out.reactivated == "wallet"
    assert out.reenable is None
    assert panel_client.calls == []


def test_sanitize_payload_bounds_input():
    long = "x" * 500
    out = sanitize_payload({"a": long, "blob": b"raw", "n": 1, "none": None, "nested": [1, {"k": object()}]})
    assert out["a"] == "x" * 200 + "…"
    assert "blob" not in out
    assert out["n"] == 1
    assert out["none"] is None
    assert out["nested"] == [1, {}]

    deep = {"l1": {"l2": {"l3": {"l4": {"l5": {"l6": 1}}}}}}
    assert sanitize_payload(deep) == {"l1": {"l2": {"l3": {"l4": {}}}}}

    many = {f"k{i}": i for i in range(80)}
    assert len(sanitize_payload(many)) == 50


async def test_starsefar_webhook_unknown_order(db, billing, gateway):
    out = await handle_starsefar_webhook(db, {"orderId": "missing", "status": "completed"}, billing, gateway)
    assert out.status == NOT_FOUND


async def test_starsefar_webhook_credits_paid_order(db, factory, billing, gateway):
    reseller = await factory.reseller()
    txn = await factory.deposit(reseller, 2000, gateway="starsefar", gateway_reference="ord-9")

    ignored = await handle_starsefar_webhook(db, {"orderId": "ord-9", "status": "pending"}, billing, gateway)
    paid = await handle_starsefar_webhook(db, {"orderId": "ord-9", "status": "COMPLETED"}, billing, gateway)
    dup = await handle_starsefar_webhook(db, {"orderId": "ord-9", "status": "completed"}, billing, gateway)

    assert ignored.status == IGNORED
    assert paid.status == CREDITED
    assert paid.transaction_id == txn.id
    assert dup.status == ALREADY_COMPLETED
    await db.refresh(reseller)
    assert reseller.wallet_balance == 2000

    with pytest.raises(BillingValidationError):
        await handle_starsefar_webhook(db, {"status": "completed"}, billing, gateway)


async def test_starsefar_poll(db, factory, billing, gateway):
    reseller = await factory.reseller()
    await factory.deposit(reseller, 2000, gateway="starsefar", gateway_reference="ord-1")

    pending = await poll_starsefar_order(db, "ord-1", FakeStarsefar({"success": True, "data": {"paid": False}}), billing, gateway)
    broken = await poll_starsefar_order(db, "ord-1", FakeStarsefar(error=PaymentGatewayError("down")), billing, gateway)
    paid = await poll_starsefar_order(db, "ord-1", FakeStarsefar({"success": True, "data": {"paid": True}}), billing, gateway)

    assert pending.status == PENDING
    assert broken.status == PENDING
    assert paid.status == CREDITED
    with pytest.raises(NotFoundError):
        await poll_starsefar_order(db, "ord-x", FakeStarsefar(), billing, gateway)


async def test_tetra98_callback_verifies_then_credits(db, factory, billing, gateway):
    reseller = await factory.reseller()
    txn = await factory.deposit(reseller, 3000, gateway="tetra98", gateway_reference="auth-1")
    client = FakeTetra98({"status": 100, "authority": "auth-1"})

    out = await handle_tetra98_callback(db, {"status": "100", "authority": "auth-1"}, client, billing, gateway)
    dup = await handle_tetra98_callback(db, {"status": "100", "authority": "auth-1"}, client, billing, gateway)

    assert out.status == CREDITED
    assert dup.status == ALREADY_COMPLETED
    assert client.verified == ["auth-1"]
    await db.refresh(txn)
    assert txn.meta["gateway_response"]["verify"]["status"] == 100


async def test_tetra98_callback_failures(db, factory, billing, gateway):
    reseller = await factory.reseller()
    cancelled = await factory.deposit(reseller, 3000, gateway="tetra98", gateway_reference="a-1")
    rejected = await factory.deposit(reseller, 3000, gateway="tetra98", gateway_reference="a-2")
    errored = await factory.deposit(reseller, 3000, gateway="tetra98", gateway_reference="a-3")

    out1 = await handle_tetra98_callback(db, {"status": "-1", "authority": "a-1"}, FakeTetra98(), billing, gateway)
    out2 = await handle_tetra98_callback(db, {"status": "100", "authority": "a-2"}, FakeTetra98({"status": "-3"}), billing, gateway)
    out3 = await handle_tetra98_callback(
        db, {"status": "100", "authority": "a-3"}, FakeTetra98(error=PaymentGatewayError("timeout")), billing, gateway
    )

    assert [out1.status, out2.status, out3.status] == [FAILED, FAILED, FAILED]
    for txn, reason in ((cancelled, "callback_status_-1"), (rejected, "verify_rejected"), (errored, "verify_error")):
        await db.refresh(txn)
        assert txn.status == TransactionStatus.failed
        assert txn.meta["failure_reason"] == reason
    await db.refresh(reseller)
    assert reseller.wallet_balance == 0

    assert (await handle_tetra98_callback(db, {}, FakeTetra98(), billing, gateway)).status == IGNORED
    missing = await handle_tetra98_callback(db, {"status": "100", "authority": "nope"}, FakeTetra98(), billing, gateway)
    assert missing.status == NOT_FOUND


async def test_card_deposit_approval_and_rejection(db, factory, billing, gateway):
    reseller = await factory.reseller()
    approved = await factory.deposit(reseller, 4000, gateway="card_to_card")
    rejected = await factory.deposit(reseller, 4000, gateway="card_to_card")
    online = await factory.deposit(reseller, 4000, gateway="tetra98")

    assert (await approve_card_deposit(db, approved.id, "admin", billing, gateway)).status == CREDITED
    assert (await reject_card_deposit(db, rejected.id, "admin", "wrong receipt")).status == FAILED
    with pytest.raises(BillingValidationError):
        await approve_card_deposit(db, online.id, "admin", billing, gateway)

    await db.refresh(reseller)
    await db.refresh(rejected)
    assert reseller.wallet_balance == 4000
    assert rejected.meta["gateway_response"] == {"rejected_by": "admin", "note": "wrong receipt"}
