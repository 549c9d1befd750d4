from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.models.common import utcnow
from reseller_billing.models.config_event import FINAL_SETTLEMENT, ResellerConfigEvent
from reseller_billing.models.ledger import LedgerAction
from reseller_billing.models.reseller import Reseller, ResellerType
from reseller_billing.models.reseller_config import ResellerConfig
from reseller_billing.services.billing_settings import BYTES_PER_GB, BillingSettings
from reseller_billing.services.config_meta import read_meta, write_meta
from reseller_billing.services.errors import NotFoundError
from reseller_billing.services.ledger import apply_wallet_change
from reseller_billing.services.locks import lock_row

logger = logging.getLogger(__name__)

SETTLED = "settled"
SKIPPED = "skipped"


class SettlementTrigger(str, enum.Enum):
    reset_traffic = "reset_traffic"
    delete_config = "delete_config"

    @property
    def ledger_action(self) -> LedgerAction:
        return LedgerAction(self.value)


@dataclass
class SettlementResult:
    status: str
    cost_charged: int = 0
    bytes_charged: int = 0
    bytes_folded: int = 0
    reason: str | None = None
    price_per_gb: int = 0
    balance_before: int | None = None
    balance_after: int | None = None
    event_id: int | None = None

    @property
    def settled(self) -> bool:
        return self.status == SETTLED


def cost_for_bytes(nbytes: int, price_per_gb: int, bytes_per_gb: int = BYTES_PER_GB) -> int:
    """ceil(nbytes / bytes_per_gb * price_per_gb) in exact integer arithmetic."""
    if nbytes <= 0 or price_per_gb <= 0:
        return 0
    return -(-int(nbytes) * int(price_per_gb) // int(bytes_per_gb))


def wallet_price_per_gb(reseller: Reseller, billing: BillingSettings) -> int:
    if reseller.wallet_price_per_gb is not None and int(reseller.wallet_price_per_gb) > 0:
        return int(reseller.wallet_price_per_gb)
    return int(billing.wallet_price_per_gb)


def unbilled_bytes(config: ResellerConfig) -> int:
    return max(0, int(config.usage_bytes or 0) - read_meta(config).billed_usage_bytes)


def fold_usage(config: ResellerConfig, now: datetime | None = None) -> int:
    """Move usage_bytes into settled_usage_bytes and start a new cycle. Returns bytes moved."""
    now = now or utcnow()
    meta = read_meta(config)
    moved = max(0, int(config.usage_bytes or 0))
    meta.add_settled(moved)
    meta.billed_usage_bytes = 0
    meta.last_reset_at = now.isoformat()
    write_meta(config, meta)
    config.usage_bytes = 0
    return moved


async def settle_config(
    db: AsyncSession,
    config_id: int,
    trigger: SettlementTrigger,
    billing: BillingSettings,
    event_type: str | None = None,
) -> SettlementResult:
    """Charge a wallet reseller for the config's unbilled usage and fold the usage.

    Runs in its own transaction: the reseller row is locked first, then the
    config row is re-read. Does not evaluate suspension; callers do that after
    the commit. When `event_type` is given, that event is written in the same
    transaction with `remote_pending=True`; the caller fills in the remote
    outcome later.
    """
    try:
        cfg = await db.get(ResellerConfig, config_id)
        if not cfg:
            raise NotFoundError(f"config {config_id} not found")
        reseller = await lock_row(db, Reseller, cfg.reseller_id)
        if not reseller:
            raise NotFoundError(f"reseller {cfg.reseller_id} not found")

        if reseller.type != ResellerType.wallet:
            await db.commit()
            return SettlementResult(status=SKIPPED, reason="not_wallet_type")
        if not billing.charge_enabled:
            await db.commit()
            return SettlementResult(status=SKIPPED, reason="charging_disabled")

        cfg = await lock_row(db, ResellerConfig, config_id)
        if int(cfg.usage_bytes or 0) <= 0:
            await db.commit()
            return SettlementResult(status=SKIPPED, reason="no_outstanding_usage")

        now = utcnow()
        price = wallet_price_per_gb(reseller, billing)
        charged_bytes = unbilled_bytes(cfg)
        cost = cost_for_bytes(charged_bytes, price, billing.bytes_per_gb)
        before = int(reseller.wallet_balance or 0)

        if charged_bytes > 0:
            apply_wallet_change(
                db,
                reseller,
                action=trigger.ledger_action,
                amount_charged=cost,
                charged_bytes=charged_bytes,
                price_per_gb=price,
                reseller_config_id=cfg.id,
                meta={"usage_bytes": int(cfg.usage_bytes), "settled_at": now.isoformat()},
            )

        folded = fold_usage(cfg, now)
        meta = read_meta(cfg)
        meta.last_settlement_at = now.isoformat()
        meta.last_settlement_action = trigger.value
        meta.last_settlement_bytes = charged_bytes
        meta.last_settlement_cost = cost
        write_meta(cfg, meta)

        db.add(
            ResellerConfigEvent(
                reseller_config_id=cfg.id,
                type=FINAL_SETTLEMENT,
                meta={
                    "trigger": trigger.value,
                    "charged_bytes": charged_bytes,
                    "folded_bytes": folded,
                    "cost": cost,
                    "price_per_gb": price,
                    "wallet_balance_before": before,
                    "wallet_balance_after": int(reseller.wallet_balance),
                },
            )
        )
        event_id = await add_pending_event(db, cfg, event_type, folded, cost)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("settlement failed config_id=%s trigger=%s", config_id, trigger.value)
        raise

    logger.info(
        "settled config_id=%s reseller_id=%s trigger=%s bytes=%s cost=%s balance %s -> %s",
        config_id,
        reseller.id,
        trigger.value,
        charged_bytes,
        cost,
        before,
        reseller.wallet_balance,
    )
    return SettlementResult(
        status=SETTLED,
        cost_charged=cost,
        bytes_charged=charged_bytes,
        bytes_folded=folded,
        price_per_gb=price,
        balance_before=before,
        balance_after=int(reseller.wallet_balance),
        event_id=event_id,
    )


async def add_pending_event(
    db: AsyncSession, config: ResellerConfig, event_type: str | None, folded: int, cost: int
) -> int | None:
    """Write the caller's config event next to the fold it belongs to; the remote outcome is filled in later."""
    if not event_type:
        return None
    event = ResellerConfigEvent(
        reseller_config_id=config.id,
        type=event_type,
        meta={
            "settled_bytes": folded,
            "cost": cost,
            "settled_usage_bytes": read_meta(config).settled_usage_bytes,
            "remote_pending": True,
        },
    )
    db.add(event)
    await db.flush()
    return event.id


async def recompute_traffic_used(db: AsyncSession, reseller: Reseller) -> int:
    """traffic_used_bytes = max(0, sum(usage + settled) - admin_forgiven_bytes) over all configs."""
    q = await db.execute(select(ResellerConfig).where(ResellerConfig.reseller_id == reseller.id))
    total = 0
    for c in q.scalars().all():
        total += max(0, int(c.usage_bytes or 0)) + read_meta(c).settled_usage_bytes
    reseller.traffic_used_bytes = max(0, total - int(reseller.admin_forgiven_bytes or 0))
    return reseller.traffic_used_bytes
