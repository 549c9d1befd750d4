from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.models.common import utcnow
from reseller_billing.models.reseller import Reseller, ResellerType
from reseller_billing.models.transaction import Transaction, TransactionStatus, TransactionType
from reseller_billing.services.billing_settings import BillingSettings
from reseller_billing.services.errors import BillingValidationError, NotFoundError
from reseller_billing.services.gateways import starsefar, tetra98
from reseller_billing.services.gateways.base import PaymentGatewayError
from reseller_billing.services.ledger import credit_wallet
from reseller_billing.services.locks import lock_row
from reseller_billing.services.provisioning.gateway import ProvisioningGateway
from reseller_billing.services.suspension import ReenableStats, reenable_suspended_configs, try_reactivate

logger = logging.getLogger(__name__)

CREDITED = "credited"
ALREADY_COMPLETED = "already_completed"
ALREADY_FAILED = "already_failed"
FAILED = "failed"
IGNORED = "ignored"
NOT_FOUND = "not_found"
PENDING = "pending"

CARD_TO_CARD = "card_to_card"

MAX_PAYLOAD_DEPTH = 5
MAX_PAYLOAD_KEYS = 50
MAX_STRING_LENGTH = 200


@dataclass
class PaymentOutcome:
    status: str
    transaction_id: int | None = None
    reactivated: str | None = None
    reenable: ReenableStats | None = None
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status, "transaction_id": self.transaction_id}
        if self.reactivated:
            out["reactivated"] = self.reactivated
        if self.reenable is not None:
            out["reenable"] = {"enabled": self.reenable.enabled, "failed": self.reenable.failed}
        if self.detail:
            out["detail"] = self.detail
        return out


def sanitize_payload(payload: Any, depth: int = 0) -> Any:
    """Bound a gateway payload before it is persisted: nested depth, key count, string length."""
    if isinstance(payload, dict):
        if depth >= MAX_PAYLOAD_DEPTH:
            return None
        out: dict[str, Any] = {}
        for k, v in list(payload.items())[:MAX_PAYLOAD_KEYS]:
            clean = sanitize_payload(v, depth + 1)
            if clean is not None or v is None:
                out[str(k)[:MAX_STRING_LENGTH]] = clean
        return out
    if isinstance(payload, (list, tuple)):
        if depth >= MAX_PAYLOAD_DEPTH:
            return None
        return [c for c in (sanitize_payload(v, depth + 1) for v in list(payload)[:MAX_PAYLOAD_KEYS]) if c is not None]
    if isinstance(payload, str):
        if len(payload) > MAX_STRING_LENGTH:
            return payload[:MAX_STRING_LENGTH] + "…"
        return payload
    if payload is None or isinstance(payload, (bool, int, float)):
        return payload
    # bytes, objects and anything else that is not plain JSON
    return None


def _deposit_mode(txn: Transaction, reseller: Reseller) -> str:
    mode = str((txn.meta or {}).get("deposit_mode") or "").strip().lower()
    if mode in ("wallet", "traffic"):
        return mode
    return "traffic" if reseller.type == ResellerType.traffic else "wallet"


async def mark_paid(
    db: AsyncSession,
    transaction_id: int,
    payload: Any,
    billing: BillingSettings,
    gateway: ProvisioningGateway,
    defer_reenable: bool = False,
) -> PaymentOutcome:
    """Apply a confirmed payment exactly once.

    The transaction and reseller rows are locked for the credit; the config
    re-enable pass runs after the commit, outside the locks.
    """
    try:
        txn = await lock_row(db, Transaction, transaction_id)
        if not txn:
            raise NotFoundError(f"transaction {transaction_id} not found")
        if txn.status == TransactionStatus.completed:
            await db.commit()
            logger.info("mark_paid duplicate notification transaction_id=%s", transaction_id)
            return PaymentOutcome(ALREADY_COMPLETED, transaction_id)
        if txn.status == TransactionStatus.failed:
            await db.commit()
            logger.info("mark_paid on failed transaction ignored transaction_id=%s", transaction_id)
            return PaymentOutcome(ALREADY_FAILED, transaction_id)
        if txn.type != TransactionType.deposit:
            raise BillingValidationError(f"transaction {transaction_id} is not a deposit")

        reseller = await lock_row(db, Reseller, txn.reseller_id)
        if not reseller:
            raise NotFoundError(f"reseller {txn.reseller_id} not found")

        meta = dict(txn.meta or {})
        mode = _deposit_mode(txn, reseller)
        if mode == "traffic":
            traffic_gb = int(meta.get("traffic_gb") or 0)
            if traffic_gb <= 0:
                raise BillingValidationError(f"traffic deposit {transaction_id} has no traffic_gb")
            credited_bytes = traffic_gb * billing.bytes_per_gb
            reseller.traffic_total_bytes = int(reseller.traffic_total_bytes or 0) + credited_bytes
            meta.setdefault("rate_per_gb", billing.traffic_price_per_gb)
            meta.setdefault("computed_amount_toman", int(txn.amount))
            purchase = Transaction(
                reseller_id=reseller.id,
                amount=int(txn.amount),
                type=TransactionType.purchase,
                status=TransactionStatus.completed,
                gateway=txn.gateway,
                description=f"Traffic top-up {traffic_gb} GB",
                meta={
                    "deposit_mode": "traffic",
                    "traffic_gb": traffic_gb,
                    "rate_per_gb": meta["rate_per_gb"],
                    "computed_amount_toman": meta["computed_amount_toman"],
                    "source_transaction_id": txn.id,
                },
            )
            db.add(purchase)
            await db.flush()
            meta["traffic_topup"] = {
                "transaction_id": purchase.id,
                "traffic_gb": traffic_gb,
                "credited_bytes": credited_bytes,
                "amount_toman": int(txn.amount),
            }
            logger.info(
                "traffic top-up recorded transaction_id=%s purchase_id=%s traffic_gb=%s",
                txn.id,
                purchase.id,
                traffic_gb,
            )
        else:
            credit_wallet(db, reseller, int(txn.amount), meta={"transaction_id": txn.id, "gateway": txn.gateway})

        lifted = try_reactivate(reseller, billing)

        meta["deposit_mode"] = mode
        meta["gateway_response"] = sanitize_payload(payload)
        txn.meta = meta
        txn.status = TransactionStatus.completed
        txn.callback_received_at = utcnow()
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("mark_paid failed transaction_id=%s", transaction_id)
        raise

    logger.info(
        "payment credited transaction_id=%s reseller_id=%s mode=%s amount=%s reactivated=%s",
        transaction_id,
        reseller.id,
        mode,
        txn.amount,
        lifted,
    )
    outcome = PaymentOutcome(CREDITED, transaction_id, reactivated=lifted)
    if lifted and billing.auto_reenable_enabled:
        if defer_reenable:
            from reseller_billing.tasks.reenable import reenable_reseller_configs

            reenable_reseller_configs.delay(reseller.id, lifted)
        else:
            outcome.reenable = await reenable_suspended_configs(db, reseller.id, lifted, gateway)
    return outcome


async def mark_failed(db: AsyncSession, transaction_id: int, payload: Any, reason: str) -> PaymentOutcome:
    try:
        txn = await lock_row(db, Transaction, transaction_id)
        if not txn:
            raise NotFoundError(f"transaction {transaction_id} not found")
        if txn.status != TransactionStatus.pending:
            await db.commit()
            status = ALREADY_COMPLETED if txn.status == TransactionStatus.completed else ALREADY_FAILED
            return PaymentOutcome(status, transaction_id)
        meta = dict(txn.meta or {})
        meta["failure_reason"] = reason
        meta["gateway_response"] = sanitize_payload(payload)
        txn.meta = meta
        txn.status = TransactionStatus.failed
        txn.callback_received_at = utcnow()
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.warning("payment failed transaction_id=%s reason=%s", transaction_id, reason)
    return PaymentOutcome(FAILED, transaction_id, detail=reason)


async def find_by_reference(db: AsyncSession, gateway_name: str, references: list[str]) -> Transaction | None:
    refs = [r for r in references if r]
    if not refs:
        return None
    q = await db.execute(
        select(Transaction)
        .where(Transaction.gateway == gateway_name, Transaction.gateway_reference.in_(refs))
        .order_by(Transaction.id.desc())
    )
    rows = q.scalars().all()
    # prefer a pending row when a reference was reused
    for t in rows:
        if t.status == TransactionStatus.pending:
            return t
    return rows[0] if rows else None


async def handle_starsefar_webhook(
    db: AsyncSession, payload: dict[str, Any], billing: BillingSettings, gateway: ProvisioningGateway
) -> PaymentOutcome:
    order_id = str(payload.get("orderId") or "").strip()
    if not order_id:
        raise BillingValidationError("orderId is required")
    txn = await find_by_reference(db, starsefar.GATEWAY_NAME, [order_id])
    if not txn:
        logger.warning("starsefar webhook for unknown order order_id=%s", order_id)
        return PaymentOutcome(NOT_FOUND, detail=order_id)
    if not starsefar.is_paid_status(payload.get("status")):
        logger.info("starsefar webhook ignored order_id=%s status=%s", order_id, str(payload.get("status"))[:32])
        return PaymentOutcome(IGNORED, txn.id)
    return await mark_paid(db, txn.id, payload, billing, gateway)


async def poll_starsefar_order(
    db: AsyncSession,
    order_id: str,
    client: starsefar.StarsefarClient,
    billing: BillingSettings,
    gateway: ProvisioningGateway,
) -> PaymentOutcome:
    txn = await find_by_reference(db, starsefar.GATEWAY_NAME, [order_id])
    if not txn:
        raise NotFoundError(f"order {order_id} not found")
    if txn.status == TransactionStatus.completed:
        return PaymentOutcome(ALREADY_COMPLETED, txn.id)
    if txn.status == TransactionStatus.failed:
        return PaymentOutcome(ALREADY_FAILED, txn.id)
    try:
        remote = await client.check_order(order_id)
    except PaymentGatewayError as e:
        logger.warning("starsefar status check failed order_id=%s err=%s", order_id, str(e)[:220])
        return PaymentOutcome(PENDING, txn.id, detail="status check failed")
    if starsefar.order_is_paid(remote):
        return await mark_paid(db, txn.id, remote, billing, gateway)
    return PaymentOutcome(PENDING, txn.id)


async def handle_tetra98_callback(
    db: AsyncSession,
    payload: dict[str, Any],
    client: tetra98.Tetra98Client,
    billing: BillingSettings,
    gateway: ProvisioningGateway,
) -> PaymentOutcome:
    if not payload:
        return PaymentOutcome(IGNORED, detail="empty payload")
    authority = str(payload.get("authority") or payload.get("Authority") or "").strip()
    hash_id = str(payload.get("hashid") or payload.get("hash_id") or "").strip()
    if not authority:
        raise BillingValidationError("authority is required")

    txn = await find_by_reference(db, tetra98.GATEWAY_NAME, [authority, hash_id])
    if not txn:
        logger.warning("tetra98 callback for unknown authority=%s", authority)
        return PaymentOutcome(NOT_FOUND, detail=authority)
    if txn.status == TransactionStatus.completed:
        logger.info("tetra98 callback duplicate transaction_id=%s", txn.id)
        return PaymentOutcome(ALREADY_COMPLETED, txn.id)
    if txn.status == TransactionStatus.failed:
        return PaymentOutcome(ALREADY_FAILED, txn.id)

    status = payload.get("status")
    if not tetra98.is_ok_status(status):
        return await mark_failed(db, txn.id, payload, f"callback_status_{str(status)[:16]}")

    try:
        verify = await client.verify(authority)
    except PaymentGatewayError as e:
        logger.error("tetra98 verify failed transaction_id=%s err=%s", txn.id, str(e)[:220])
        return await mark_failed(db, txn.id, payload, "verify_error")

    if not tetra98.is_ok_status(verify.get("status")):
        return await mark_failed(db, txn.id, {"callback": payload, "verify": verify}, "verify_rejected")
    return await mark_paid(db, txn.id, {"callback": payload, "verify": verify}, billing, gateway)


async def approve_card_deposit(
    db: AsyncSession, transaction_id: int, approved_by: str, billing: BillingSettings, gateway: ProvisioningGateway
) -> PaymentOutcome:
    txn = await db.get(Transaction, transaction_id)
    if not txn:
        raise NotFoundError(f"transaction {transaction_id} not found")
    if txn.gateway not in (None, CARD_TO_CARD):
        raise BillingValidationError("Only card-to-card deposits can be approved manually.")
    return await mark_paid(db, transaction_id, {"approved_by": approved_by}, billing, gateway)


async def reject_card_deposit(db: AsyncSession, transaction_id: int, rejected_by: str, note: str | None = None) -> PaymentOutcome:
    txn = await db.get(Transaction, transaction_id)
    if not txn:
        raise NotFoundError(f"transaction {transaction_id} not found")
    if txn.gateway not in (None, CARD_TO_CARD):
        raise BillingValidationError("Only card-to-card deposits can be rejected manually.")
    return await mark_failed(db, transaction_id, {"rejected_by": rejected_by, "note": note}, "rejected_by_operator")
