from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.models.common import as_utc, utcnow
from reseller_billing.models.config_event import AUTO_DISABLED, ResellerConfigEvent
from reseller_billing.models.panel import Panel
from reseller_billing.models.reseller import Reseller, ResellerType
from reseller_billing.models.reseller_config import ConfigStatus, ResellerConfig
from reseller_billing.services.billing_settings import BillingSettings
from reseller_billing.services.provisioning.gateway import ProvisioningGateway
from reseller_billing.services.settlement import recompute_traffic_used
from reseller_billing.services.suspension import evaluate_traffic_suspension, start_of_day
from reseller_billing.services.task_metrics import TaskRunStats

logger = logging.getLogger(__name__)

TRAFFIC_LIMIT = "traffic_limit"
TIME_EXPIRED = "time_expired"


def config_limit_reason(cfg: ResellerConfig, billing: BillingSettings, now: datetime) -> str | None:
    limit = int(cfg.traffic_limit_bytes or 0)
    if limit > 0 and int(cfg.usage_bytes or 0) >= limit:
        return TRAFFIC_LIMIT
    if cfg.expires_at is not None and now >= start_of_day(as_utc(cfg.expires_at), billing.app_timezone):
        return TIME_EXPIRED
    return None


async def sync_reseller_usage(
    db: AsyncSession,
    reseller_id: int,
    billing: BillingSettings,
    gateway: ProvisioningGateway,
    stats: TaskRunStats | None = None,
    now: datetime | None = None,
) -> TaskRunStats:
    """Pull per-config usage from the panels, enforce per-config limits, then the reseller quota.

    Quota and window enforcement only applies to traffic resellers; wallet
    resellers are billed from the same numbers by the periodic charge.
    """
    stats = stats or TaskRunStats()
    now = now or utcnow()
    reseller = await db.get(Reseller, reseller_id, populate_existing=True)
    if not reseller:
        return stats
    stats.scanned_resellers += 1

    q = await db.execute(
        select(ResellerConfig)
        .where(ResellerConfig.reseller_id == reseller_id, ResellerConfig.status == ConfigStatus.active)
        .order_by(ResellerConfig.id.asc())
    )
    configs = q.scalars().all()
    panel_ids = {c.panel_id for c in configs if c.panel_id}
    panels: dict[int, Panel] = {}
    if panel_ids:
        pq = await db.execute(select(Panel).where(Panel.id.in_(list(panel_ids))))
        panels = {p.id: p for p in pq.scalars().all()}

    for cfg in configs:
        stats.scanned_configs += 1
        panel = panels.get(cfg.panel_id) if cfg.panel_id else None
        # a panel outage keeps the previous local usage
        try:
            used = await gateway.get_used_bytes(panel, cfg.panel_user_id)
        except Exception as e:
            stats.remote_failures += 1
            logger.warning(
                "sync_usage remote fetch failed reseller_id=%s config_id=%s panel_id=%s err=%s",
                reseller_id,
                cfg.id,
                cfg.panel_id,
                str(e)[:220],
            )
            continue
        if used is None:
            stats.remote_skipped += 1
            continue
        stats.remote_success += 1
        cfg.usage_bytes = max(0, int(used))

        if reseller.type != ResellerType.traffic:
            continue
        reason = config_limit_reason(cfg, billing, now)
        if reason is None:
            continue
        result = await gateway.disable_user(panel, cfg.panel_user_id)
        if not result.success:
            stats.remote_failures += 1
        cfg.status = ConfigStatus.expired if reason == TIME_EXPIRED else ConfigStatus.disabled
        cfg.disabled_at = now
        db.add(ResellerConfigEvent(reseller_config_id=cfg.id, type=AUTO_DISABLED, meta={"reason": reason, **result.event_meta()}))
        stats.disabled_configs += 1

    try:
        if reseller.type == ResellerType.traffic:
            await recompute_traffic_used(db, reseller)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if reseller.type == ResellerType.traffic and await evaluate_traffic_suspension(db, reseller_id, billing, gateway, now):
        stats.suspended_resellers += 1
    return stats
