from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.models.common import as_utc, utcnow
from reseller_billing.models.ledger import LedgerAction
from reseller_billing.models.reseller import Reseller, ResellerType
from reseller_billing.models.reseller_config import ResellerConfig
from reseller_billing.models.usage_snapshot import ResellerUsageSnapshot
from reseller_billing.services.billing_settings import BillingSettings
from reseller_billing.services.config_meta import read_meta, write_meta
from reseller_billing.services.errors import NotFoundError
from reseller_billing.services.ledger import apply_wallet_change
from reseller_billing.services.locks import lock_row
from reseller_billing.services.provisioning.gateway import ProvisioningGateway
from reseller_billing.services.settlement import cost_for_bytes, unbilled_bytes, wallet_price_per_gb
from reseller_billing.services.suspension import evaluate_wallet_suspension

logger = logging.getLogger(__name__)

CHARGED = "charged"
SKIPPED = "skipped"
DRY_RUN = "dry_run"


@dataclass
class ChargeResult:
    status: str
    reseller_id: int
    reason: str | None = None
    delta_bytes: int = 0
    total_bytes: int = 0
    cost: int = 0
    price_per_gb: int = 0
    balance_before: int | None = None
    balance_after: int | None = None
    suspended: bool = False
    per_config: dict[int, int] = field(default_factory=dict)


async def _last_snapshot(db: AsyncSession, reseller_id: int) -> ResellerUsageSnapshot | None:
    q = await db.execute(
        select(ResellerUsageSnapshot)
        .where(ResellerUsageSnapshot.reseller_id == reseller_id)
        .order_by(ResellerUsageSnapshot.measured_at.desc(), ResellerUsageSnapshot.id.desc())
        .limit(1)
    )
    return q.scalar_one_or_none()


async def charge_reseller(
    db: AsyncSession,
    reseller_id: int,
    billing: BillingSettings,
    gateway: ProvisioningGateway,
    dry_run: bool = False,
    force: bool = False,
) -> ChargeResult:
    """Periodic wallet charge for usage not yet billed by a previous pass or a settlement."""
    if not (billing.charge_enabled and billing.hourly_charge_enabled):
        return ChargeResult(SKIPPED, reseller_id, reason="charging_disabled")

    now = utcnow()
    try:
        reseller = await lock_row(db, Reseller, reseller_id)
        if not reseller:
            raise NotFoundError(f"reseller {reseller_id} not found")
        if reseller.type != ResellerType.wallet:
            await db.commit()
            return ChargeResult(SKIPPED, reseller_id, reason="not_wallet_type")

        if not force and billing.charge_idempotency_minutes > 0:
            last = await _last_snapshot(db, reseller_id)
            if last and as_utc(last.measured_at) > now - timedelta(minutes=billing.charge_idempotency_minutes):
                await db.commit()
                return ChargeResult(SKIPPED, reseller_id, reason="recently_charged")

        q = await db.execute(
            select(ResellerConfig)
            .where(ResellerConfig.reseller_id == reseller_id)
            .order_by(ResellerConfig.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        configs = q.scalars().all()
        per_config = {c.id: unbilled_bytes(c) for c in configs}
        per_config = {k: v for k, v in per_config.items() if v > 0}
        delta = sum(per_config.values())
        total = sum(max(0, int(c.usage_bytes or 0)) + read_meta(c).settled_usage_bytes for c in configs)
        price = wallet_price_per_gb(reseller, billing)
        cost = cost_for_bytes(delta, price, billing.bytes_per_gb)
        before = int(reseller.wallet_balance or 0)

        result = ChargeResult(
            DRY_RUN if dry_run else CHARGED,
            reseller_id,
            delta_bytes=delta,
            total_bytes=total,
            cost=cost,
            price_per_gb=price,
            balance_before=before,
            balance_after=before - cost,
            per_config=per_config,
        )
        if delta < max(1, billing.minimum_delta_bytes_to_charge) and not force:
            await db.commit()
            result.status = SKIPPED
            result.reason = "below_minimum_delta"
            result.balance_after = before
            return result
        if dry_run:
            await db.commit()
            return result

        if delta > 0:
            apply_wallet_change(
                db,
                reseller,
                action=LedgerAction.hourly_charge,
                amount_charged=cost,
                charged_bytes=delta,
                price_per_gb=price,
                meta={"configs": {str(k): v for k, v in per_config.items()}, "total_bytes": total},
            )
            for c in configs:
                if c.id in per_config:
                    meta = read_meta(c)
                    meta.billed_usage_bytes = int(c.usage_bytes or 0)
                    write_meta(c, meta)
        db.add(
            ResellerUsageSnapshot(
                reseller_id=reseller_id,
                total_bytes=total,
                measured_at=now,
                meta={"delta_bytes": delta, "cost": cost, "price_per_gb": price},
            )
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("wallet charge failed reseller_id=%s", reseller_id)
        raise

    logger.info(
        "wallet charged reseller_id=%s delta_bytes=%s cost=%s balance %s -> %s",
        reseller_id,
        delta,
        cost,
        before,
        result.balance_after,
    )
    result.suspended = await evaluate_wallet_suspension(db, reseller_id, billing, gateway)
    return result
