from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.models.common import as_utc, utcnow
from reseller_billing.models.config_event import (
    AUTO_DISABLED,
    AUTO_ENABLE_FAILED,
    AUTO_ENABLED,
    ResellerConfigEvent,
)
from reseller_billing.models.reseller import Reseller, ResellerStatus, ResellerType
from reseller_billing.models.reseller_config import ConfigStatus, ResellerConfig
from reseller_billing.services.billing_settings import BillingSettings
from reseller_billing.services.config_meta import SUSPENSION_REASONS, read_meta, write_meta
from reseller_billing.services.errors import InvalidTransition, NotFoundError
from reseller_billing.services.locks import lock_row
from reseller_billing.services.provisioning.gateway import ProvisioningGateway, panel_for_config

logger = logging.getLogger(__name__)

WALLET = "wallet"
TRAFFIC = "traffic"

SUSPENDED_STATUS = {
    WALLET: ResellerStatus.suspended_wallet,
    TRAFFIC: ResellerStatus.suspended_traffic,
}

# No automatic exit from suspended_other / suspended / disabled.
ALLOWED_TRANSITIONS: dict[ResellerStatus, set[ResellerStatus]] = {
    ResellerStatus.active: {
        ResellerStatus.suspended_wallet,
        ResellerStatus.suspended_traffic,
        ResellerStatus.suspended_other,
        ResellerStatus.disabled,
    },
    ResellerStatus.suspended_wallet: {ResellerStatus.active, ResellerStatus.disabled, ResellerStatus.suspended_other},
    ResellerStatus.suspended_traffic: {ResellerStatus.active, ResellerStatus.disabled, ResellerStatus.suspended_other},
    ResellerStatus.suspended_other: {ResellerStatus.active, ResellerStatus.disabled},
    ResellerStatus.suspended: {ResellerStatus.active, ResellerStatus.disabled},
    ResellerStatus.disabled: {ResellerStatus.active},
}


@dataclass
class ReenableStats:
    enabled: int = 0
    failed: int = 0


@dataclass
class DisableStats:
    disabled: int = 0
    skipped: int = 0
    remote_failures: int = 0


def transition(reseller: Reseller, target: ResellerStatus) -> None:
    current = ResellerStatus(reseller.status)
    if target == current:
        return
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current.value, target.value)
    reseller.status = target


def start_of_day(dt: datetime, tz_name: str) -> datetime:
    local = as_utc(dt).astimezone(ZoneInfo(tz_name))
    return datetime.combine(local.date(), time.min, tzinfo=local.tzinfo)


def is_window_valid(reseller: Reseller, billing: BillingSettings, now: datetime | None = None) -> bool:
    """An end date is exclusive from the start of that day in the app timezone."""
    if reseller.window_ends_at is None:
        return True
    if reseller.window_starts_at is None:
        return False
    now = now or utcnow()
    starts = as_utc(reseller.window_starts_at)
    ends = start_of_day(reseller.window_ends_at, billing.app_timezone)
    return starts <= now < ends


def has_traffic_remaining(reseller: Reseller) -> bool:
    return int(reseller.traffic_used_bytes or 0) < int(reseller.traffic_total_bytes or 0)


def wallet_should_suspend(reseller: Reseller, billing: BillingSettings) -> bool:
    return (
        reseller.type == ResellerType.wallet
        and reseller.status == ResellerStatus.active
        and int(reseller.wallet_balance or 0) < billing.suspension_threshold
    )


def wallet_can_reactivate(reseller: Reseller, billing: BillingSettings) -> bool:
    return (
        reseller.status == ResellerStatus.suspended_wallet
        and int(reseller.wallet_balance or 0) >= billing.reactivation_balance
    )


def traffic_should_suspend(reseller: Reseller, billing: BillingSettings, now: datetime | None = None) -> bool:
    if reseller.type != ResellerType.traffic or reseller.status != ResellerStatus.active:
        return False
    return not has_traffic_remaining(reseller) or not is_window_valid(reseller, billing, now)


def traffic_can_reactivate(reseller: Reseller, billing: BillingSettings, now: datetime | None = None) -> bool:
    return (
        reseller.status == ResellerStatus.suspended_traffic
        and has_traffic_remaining(reseller)
        and is_window_valid(reseller, billing, now)
    )


def try_reactivate(reseller: Reseller, billing: BillingSettings, now: datetime | None = None) -> str | None:
    """Flip a suspended reseller back to active when eligible. Caller holds the row lock.

    Returns the suspension reason that was lifted, or None.
    """
    if wallet_can_reactivate(reseller, billing):
        transition(reseller, ResellerStatus.active)
        return WALLET
    if traffic_can_reactivate(reseller, billing, now):
        transition(reseller, ResellerStatus.active)
        return TRAFFIC
    return None


async def suspend_reseller(
    db: AsyncSession,
    reseller_id: int,
    reason: str,
    gateway: ProvisioningGateway,
) -> DisableStats:
    """Move an active reseller into suspended_<reason> and disable its active configs."""
    if reason not in SUSPENSION_REASONS:
        raise ValueError(f"unknown suspension reason {reason}")
    try:
        reseller = await lock_row(db, Reseller, reseller_id)
        if not reseller:
            raise NotFoundError(f"reseller {reseller_id} not found")
        transition(reseller, SUSPENDED_STATUS[reason])
        cycle_at = utcnow().isoformat()
        reseller.meta = {**(reseller.meta or {}), "suspension_cycle_at": cycle_at, "suspension_reason": reason}
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.warning(
        "reseller suspended reseller_id=%s reason=%s wallet_balance=%s traffic_used=%s/%s",
        reseller.id,
        reason,
        reseller.wallet_balance,
        reseller.traffic_used_bytes,
        reseller.traffic_total_bytes,
    )
    stats = await disable_configs_for_suspension(db, reseller, reason, cycle_at, gateway)
    logger.info(
        "suspension cascade reseller_id=%s reason=%s disabled=%s skipped=%s remote_failures=%s",
        reseller.id,
        reason,
        stats.disabled,
        stats.skipped,
        stats.remote_failures,
    )
    return stats


async def disable_configs_for_suspension(
    db: AsyncSession,
    reseller: Reseller,
    reason: str,
    cycle_at: str,
    gateway: ProvisioningGateway,
) -> DisableStats:
    stats = DisableStats()
    q = await db.execute(
        select(ResellerConfig)
        .where(ResellerConfig.reseller_id == reseller.id, ResellerConfig.status == ConfigStatus.active)
        .order_by(ResellerConfig.id.asc())
    )
    configs = q.scalars().all()
    for i, cfg in enumerate(configs):
        meta = read_meta(cfg)
        if meta.suspension_flag(reason) and meta.suspension_cycle_at == cycle_at:
            stats.skipped += 1
            continue
        if i > 0:
            await gateway.pace()

        panel = await panel_for_config(db, cfg)
        result = await gateway.disable_user(panel, cfg.panel_user_id)
        if not result.success:
            stats.remote_failures += 1

        now = utcnow()
        meta.mark_suspended(reason, reseller.id, cycle_at)
        write_meta(cfg, meta)
        cfg.status = ConfigStatus.disabled
        cfg.disabled_at = now
        db.add(
            ResellerConfigEvent(
                reseller_config_id=cfg.id,
                type=AUTO_DISABLED,
                meta={"reason": f"{reason}_suspension", **result.event_meta()},
            )
        )
        await db.commit()
        stats.disabled += 1
    return stats


async def evaluate_wallet_suspension(
    db: AsyncSession,
    reseller_id: int,
    billing: BillingSettings,
    gateway: ProvisioningGateway,
) -> bool:
    """Suspend a wallet reseller whose balance fell below the threshold. True when suspended now."""
    reseller = await db.get(Reseller, reseller_id, populate_existing=True)
    if not reseller or not wallet_should_suspend(reseller, billing):
        return False
    await suspend_reseller(db, reseller_id, WALLET, gateway)
    return True


async def evaluate_traffic_suspension(
    db: AsyncSession,
    reseller_id: int,
    billing: BillingSettings,
    gateway: ProvisioningGateway,
    now: datetime | None = None,
) -> bool:
    reseller = await db.get(Reseller, reseller_id, populate_existing=True)
    if not reseller or not traffic_should_suspend(reseller, billing, now):
        return False
    await suspend_reseller(db, reseller_id, TRAFFIC, gateway)
    return True


async def reenable_suspended_configs(
    db: AsyncSession,
    reseller_id: int,
    reason: str,
    gateway: ProvisioningGateway,
) -> ReenableStats:
    """Re-enable configs disabled by a <reason> suspension. Remote first, best effort.

    A config is only marked active locally after the panel accepted the enable;
    failures keep their marker so a later sweep retries them. Never raises.
    """
    stats = ReenableStats()
    if reason not in SUSPENSION_REASONS:
        logger.error("reenable unknown reason=%s reseller_id=%s", reason, reseller_id)
        return stats

    reseller = await db.get(Reseller, reseller_id, populate_existing=True)
    if not reseller:
        logger.warning("reenable reseller missing reseller_id=%s", reseller_id)
        return stats
    if reseller.status != ResellerStatus.active:
        logger.info("reenable skipped reseller_id=%s status=%s", reseller_id, reseller.status.value)
        return stats

    q = await db.execute(
        select(ResellerConfig)
        .where(ResellerConfig.reseller_id == reseller_id, ResellerConfig.status == ConfigStatus.disabled)
        .order_by(ResellerConfig.id.asc())
    )
    config_ids = [c.id for c in q.scalars().all() if read_meta(c).suspension_flag(reason)]
    if not config_ids:
        return stats

    for i, config_id in enumerate(config_ids):
        if i > 0:
            await gateway.pace()
        try:
            cfg = await db.get(ResellerConfig, config_id)
            panel = await panel_for_config(db, cfg)
            result = await gateway.enable_user(panel, cfg.panel_user_id)
            if result.success:
                meta = read_meta(cfg)
                meta.clear_suspension(reason)
                write_meta(cfg, meta)
                cfg.status = ConfigStatus.active
                cfg.disabled_at = None
                event_type = AUTO_ENABLED
                stats.enabled += 1
            else:
                event_type = AUTO_ENABLE_FAILED
                stats.failed += 1
            db.add(
                ResellerConfigEvent(
                    reseller_config_id=cfg.id,
                    type=event_type,
                    meta={"reason": f"{reason}_recharged", **result.event_meta()},
                )
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            stats.failed += 1
            logger.error("reenable failed config_id=%s reseller_id=%s err=%s", config_id, reseller_id, str(e)[:220])

    logger.info(
        "reenable done reseller_id=%s reason=%s enabled=%s failed=%s",
        reseller_id,
        reason,
        stats.enabled,
        stats.failed,
    )
    return stats
