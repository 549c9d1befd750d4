from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from reseller_billing.models.common import utcnow
from reseller_billing.models.ledger import LedgerAction
from reseller_billing.models.reseller import ResellerStatus, ResellerType
from reseller_billing.models.usage_snapshot import ResellerUsageSnapshot
from reseller_billing.services.config_meta import read_meta
from reseller_billing.services.ledger import list_entries
from reseller_billing.services.settlement import SettlementTrigger, settle_config
from reseller_billing.services.wallet_charging import CHARGED, DRY_RUN, SKIPPED, charge_reseller

GIB = 1024 ** 3
MIB = 1024 ** 2


async def test_hourly_charge_bills_unbilled_usage(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=5000)
    a = await factory.config(reseller, usage_bytes=GIB)
    b = await factory.config(reseller, usage_bytes=2 * GIB, meta={"billed_usage_bytes": GIB})

    res = await charge_reseller(db, reseller.id, billing, gateway)

    assert res.status == CHARGED
    assert res.delta_bytes == 2 * GIB
    assert res.cost == 1560
    assert res.per_config == {a.id: GIB, b.id: GIB}
    await db.refresh(reseller)
    assert reseller.wallet_balance == 3440
    for cfg in (a, b):
        await db.refresh(cfg)
        assert read_meta(cfg).billed_usage_bytes == cfg.usage_bytes

    entries = await list_entries(db, reseller.id)
    assert [e.action_type for e in entries] == [LedgerAction.hourly_charge]
    assert entries[0].reseller_config_id is None
    snaps = (await db.execute(select(ResellerUsageSnapshot))).scalars().all()
    assert len(snaps) == 1
    assert snaps[0].total_bytes == 3 * GIB


async def test_charge_is_idempotent_within_window(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=5000)
    cfg = await factory.config(reseller, usage_bytes=GIB)

    first = await charge_reseller(db, reseller.id, billing, gateway)
    cfg.usage_bytes = 2 * GIB
    await db.commit()
    second = await charge_reseller(db, reseller.id, billing, gateway)
    forced = await charge_reseller(db, reseller.id, billing, gateway, force=True)

    assert first.status == CHARGED
    assert second.status == SKIPPED
    assert second.reason == "recently_charged"
    assert forced.status == CHARGED
    assert forced.delta_bytes == GIB
    await db.refresh(reseller)
    assert reseller.wallet_balance == 5000 - 780 - 780


async def test_old_snapshot_does_not_block(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=5000)
    await factory.config(reseller, usage_bytes=GIB)
    db.add(ResellerUsageSnapshot(reseller_id=reseller.id, total_bytes=0, measured_at=utcnow() - timedelta(hours=2)))
    await db.commit()

    res = await charge_reseller(db, reseller.id, billing, gateway)

    assert res.status == CHARGED


async def test_small_delta_is_not_charged(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=5000)
    cfg = await factory.config(reseller, usage_bytes=MIB)

    res = await charge_reseller(db, reseller.id, billing, gateway)

    assert res.status == SKIPPED
    assert res.reason == "below_minimum_delta"
    await db.refresh(cfg)
    assert read_meta(cfg).billed_usage_bytes == 0
    assert await list_entries(db, reseller.id) == []


async def test_dry_run_changes_nothing(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=5000)
    await factory.config(reseller, usage_bytes=GIB)

    res = await charge_reseller(db, reseller.id, billing, gateway, dry_run=True)

    assert res.status == DRY_RUN
    assert res.cost == 780
    assert res.balance_after == 4220
    await db.refresh(reseller)
    assert reseller.wallet_balance == 5000
    assert (await db.execute(select(ResellerUsageSnapshot))).scalars().all() == []


async def test_skip_rules(db, factory, billing, gateway):
    traffic = await factory.reseller(type=ResellerType.traffic)
    wallet = await factory.reseller()

    assert (await charge_reseller(db, traffic.id, billing, gateway)).reason == "not_wallet_type"
    off = billing.with_overrides(hourly_charge_enabled=False)
    assert (await charge_reseller(db, wallet.id, off, gateway)).reason == "charging_disabled"


async def test_charge_then_settlement_never_double_bills(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=10000)
    cfg = await factory.config(reseller, usage_bytes=GIB)

    await charge_reseller(db, reseller.id, billing, gateway)
    cfg.usage_bytes = 3 * GIB
    await db.commit()
    res = await settle_config(db, cfg.id, SettlementTrigger.reset_traffic, billing)

    assert res.bytes_charged == 2 * GIB
    assert res.bytes_folded == 3 * GIB
    await db.refresh(reseller)
    assert reseller.wallet_balance == 10000 - 780 * 3


async def test_charge_below_threshold_suspends(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=0)
    await factory.config(reseller, usage_bytes=2 * GIB)

    res = await charge_reseller(db, reseller.id, billing, gateway)

    assert res.suspended is True
    await db.refresh(reseller)
    assert reseller.status == ResellerStatus.suspended_wallet
