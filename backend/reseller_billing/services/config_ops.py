from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.models.common import as_utc, utcnow
from reseller_billing.models.config_event import (
    DELETED,
    EDITED,
    MANUAL_DISABLED,
    MANUAL_ENABLED,
    USAGE_RESET,
    ResellerConfigEvent,
)
from reseller_billing.models.reseller import Reseller, ResellerStatus, ResellerType
from reseller_billing.models.reseller_config import ConfigStatus, ResellerConfig
from reseller_billing.services.billing_settings import BillingSettings
from reseller_billing.services.config_meta import SUSPENSION_REASONS, read_meta, write_meta
from reseller_billing.services.errors import BillingValidationError, NotFoundError
from reseller_billing.services.locks import lock_row
from reseller_billing.services.provisioning.gateway import (
    NO_PANEL,
    ProvisioningGateway,
    RemoteActionResult,
    panel_for_config,
)
from reseller_billing.services.settlement import (
    SKIPPED,
    SettlementResult,
    SettlementTrigger,
    add_pending_event,
    fold_usage,
    recompute_traffic_used,
    settle_config,
)
from reseller_billing.services.suspension import (
    evaluate_traffic_suspension,
    evaluate_wallet_suspension,
    has_traffic_remaining,
    is_window_valid,
)

logger = logging.getLogger(__name__)

OK = "ok"
REMOTE_FAILED = "remote_failed"
FAILED = "failed"


@dataclass
class OpOutcome:
    outcome: str
    message: str
    config_id: int
    remote: RemoteActionResult | None = None
    settlement: SettlementResult | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == OK

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"outcome": self.outcome, "message": self.message, "config_id": self.config_id}
        if self.remote is not None:
            out["remote"] = self.remote.as_dict()
        if self.settlement is not None:
            out["cost_charged"] = self.settlement.cost_charged
            out["bytes_charged"] = self.settlement.bytes_charged
        return out


def _remote_failed(result: RemoteActionResult) -> bool:
    return not result.success and result is not NO_PANEL


def _gb(nbytes: int) -> str:
    return f"{nbytes / 1024 ** 3:.2f}"


async def _load(db: AsyncSession, config_id: int) -> tuple[ResellerConfig, Reseller]:
    cfg = await db.get(ResellerConfig, config_id, populate_existing=True)
    if not cfg:
        raise NotFoundError(f"config {config_id} not found")
    reseller = await db.get(Reseller, cfg.reseller_id, populate_existing=True)
    if not reseller:
        raise NotFoundError(f"reseller {cfg.reseller_id} not found")
    return cfg, reseller


async def _fold_without_charge(db: AsyncSession, config_id: int, event_type: str | None = None) -> tuple[int, int | None]:
    try:
        cfg = await db.get(ResellerConfig, config_id)
        await lock_row(db, Reseller, cfg.reseller_id)
        cfg = await lock_row(db, ResellerConfig, config_id)
        moved = fold_usage(cfg)
        event_id = await add_pending_event(db, cfg, event_type, moved, 0)
        await db.commit()
        return moved, event_id
    except Exception:
        await db.rollback()
        raise


async def _settle_or_fold(
    db: AsyncSession,
    cfg: ResellerConfig,
    reseller: Reseller,
    trigger: SettlementTrigger,
    billing: BillingSettings,
    event_type: str,
) -> tuple[SettlementResult | None, int, int | None]:
    """Fold the config usage before the panel counter is touched. Returns (settlement, folded bytes, event id)."""
    if reseller.type != ResellerType.wallet:
        folded, event_id = await _fold_without_charge(db, cfg.id, event_type)
        return None, folded, event_id
    res = await settle_config(db, cfg.id, trigger, billing, event_type=event_type)
    if res.status == SKIPPED and res.reason == "charging_disabled":
        # usage is folded uncharged while charging is off
        folded, event_id = await _fold_without_charge(db, cfg.id, event_type)
        res.bytes_folded = folded
        return res, folded, event_id
    return res, res.bytes_folded, res.event_id


async def _finish(
    db: AsyncSession,
    config_id: int,
    event_type: str,
    result: RemoteActionResult,
    extra: dict[str, Any] | None = None,
    apply=None,
    event_id: int | None = None,
) -> None:
    """Apply the local change, refresh the reseller aggregate and log the event in one transaction.

    With `event_id` the event written at settlement time gets the remote outcome
    instead of a second event being added.
    """
    try:
        cfg = await db.get(ResellerConfig, config_id)
        reseller = await lock_row(db, Reseller, cfg.reseller_id)
        cfg = await lock_row(db, ResellerConfig, config_id)
        if apply is not None:
            apply(cfg)
        if reseller.type == ResellerType.traffic:
            await recompute_traffic_used(db, reseller)
        event = await db.get(ResellerConfigEvent, event_id) if event_id else None
        if event is not None:
            meta = {k: v for k, v in (event.meta or {}).items() if k != "remote_pending"}
            event.meta = {**meta, **(extra or {}), **result.event_meta()}
        else:
            db.add(
                ResellerConfigEvent(
                    reseller_config_id=config_id, type=event_type, meta={**(extra or {}), **result.event_meta()}
                )
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def _recheck_suspension(db: AsyncSession, reseller_id: int, billing: BillingSettings, gateway: ProvisioningGateway) -> None:
    reseller = await db.get(Reseller, reseller_id, populate_existing=True)
    if reseller.type == ResellerType.wallet:
        await evaluate_wallet_suspension(db, reseller_id, billing, gateway)
    elif reseller.type == ResellerType.traffic:
        await evaluate_traffic_suspension(db, reseller_id, billing, gateway)


async def reset_config_traffic(
    db: AsyncSession, config_id: int, billing: BillingSettings, gateway: ProvisioningGateway
) -> OpOutcome:
    cfg, reseller = await _load(db, config_id)
    if cfg.status == ConfigStatus.deleted:
        raise BillingValidationError("Deleted configs cannot be reset.")

    settlement, folded, event_id = await _settle_or_fold(
        db, cfg, reseller, SettlementTrigger.reset_traffic, billing, USAGE_RESET
    )

    cfg, _ = await _load(db, config_id)
    panel = await panel_for_config(db, cfg)
    result = await gateway.reset_user_usage(panel, cfg.panel_user_id)

    await _finish(
        db,
        config_id,
        USAGE_RESET,
        result,
        extra={
            "settled_bytes": folded,
            "cost": settlement.cost_charged if settlement else 0,
            "settled_usage_bytes": read_meta(cfg).settled_usage_bytes,
        },
        event_id=event_id,
    )
    await _recheck_suspension(db, reseller.id, billing, gateway)

    if _remote_failed(result):
        return OpOutcome(
            REMOTE_FAILED,
            f"Usage reset locally (settled {_gb(folded)} GB), but remote panel reset failed after {result.attempts} attempts.",
            config_id,
            result,
            settlement,
        )
    return OpOutcome(OK, f"Usage reset successfully (settled {_gb(folded)} GB).", config_id, result, settlement)


async def delete_config(
    db: AsyncSession, config_id: int, billing: BillingSettings, gateway: ProvisioningGateway
) -> OpOutcome:
    cfg, reseller = await _load(db, config_id)
    if cfg.status == ConfigStatus.deleted:
        raise BillingValidationError("Config is already deleted.")

    settlement, folded, event_id = await _settle_or_fold(
        db, cfg, reseller, SettlementTrigger.delete_config, billing, DELETED
    )

    cfg, _ = await _load(db, config_id)
    panel = await panel_for_config(db, cfg)
    result = await gateway.delete_user(panel, cfg.panel_user_id)

    def apply(c: ResellerConfig) -> None:
        c.status = ConfigStatus.deleted
        c.disabled_at = c.disabled_at or utcnow()

    await _finish(db, config_id, DELETED, result, extra={"settled_bytes": folded}, apply=apply, event_id=event_id)
    await _recheck_suspension(db, reseller.id, billing, gateway)

    if _remote_failed(result):
        return OpOutcome(
            REMOTE_FAILED,
            f"Config deleted locally, but remote panel deletion failed after {result.attempts} attempts.",
            config_id,
            result,
            settlement,
        )
    return OpOutcome(OK, "Config deleted successfully.", config_id, result, settlement)


async def disable_config(
    db: AsyncSession, config_id: int, billing: BillingSettings, gateway: ProvisioningGateway
) -> OpOutcome:
    cfg, _ = await _load(db, config_id)
    if cfg.status != ConfigStatus.active:
        raise BillingValidationError("Only active configs can be disabled.")

    panel = await panel_for_config(db, cfg)
    result = await gateway.disable_user(panel, cfg.panel_user_id)

    def apply(c: ResellerConfig) -> None:
        c.status = ConfigStatus.disabled
        c.disabled_at = utcnow()

    await _finish(db, config_id, MANUAL_DISABLED, result, apply=apply)

    if _remote_failed(result):
        return OpOutcome(
            REMOTE_FAILED,
            f"Config disabled locally, but remote panel update failed after {result.attempts} attempts.",
            config_id,
            result,
        )
    return OpOutcome(OK, "Config disabled successfully.", config_id, result)


async def enable_config(
    db: AsyncSession, config_id: int, billing: BillingSettings, gateway: ProvisioningGateway
) -> OpOutcome:
    cfg, reseller = await _load(db, config_id)
    if cfg.status != ConfigStatus.disabled:
        raise BillingValidationError("Only disabled configs can be enabled.")
    if reseller.status != ResellerStatus.active:
        raise BillingValidationError("Reseller account is suspended; configs cannot be enabled.")
    if reseller.type == ResellerType.traffic:
        if not has_traffic_remaining(reseller):
            raise BillingValidationError("Reseller has no traffic remaining.")
        if not is_window_valid(reseller, billing):
            raise BillingValidationError("Reseller time window has expired.")

    panel = await panel_for_config(db, cfg)
    result = await gateway.enable_user(panel, cfg.panel_user_id)

    def apply(c: ResellerConfig) -> None:
        meta = read_meta(c)
        for reason in SUSPENSION_REASONS:
            meta.clear_suspension(reason)
        write_meta(c, meta)
        c.status = ConfigStatus.active
        c.disabled_at = None

    await _finish(db, config_id, MANUAL_ENABLED, result, apply=apply)

    if _remote_failed(result):
        return OpOutcome(
            REMOTE_FAILED,
            f"Config enabled locally, but remote panel update failed after {result.attempts} attempts.",
            config_id,
            result,
        )
    return OpOutcome(OK, "Config enabled successfully.", config_id, result)


async def update_config_limits(
    db: AsyncSession,
    config_id: int,
    traffic_limit_bytes: int,
    expires_at: datetime | None,
    gateway: ProvisioningGateway,
    max_clients: int | None = None,
    node_ids: list[int] | None = None,
) -> OpOutcome:
    cfg, _ = await _load(db, config_id)
    if cfg.status == ConfigStatus.deleted:
        raise BillingValidationError("Deleted configs cannot be edited.")
    if traffic_limit_bytes < int(cfg.usage_bytes or 0):
        raise BillingValidationError("Traffic limit cannot be lower than current usage.")
    if expires_at is not None and as_utc(expires_at) <= utcnow():
        raise BillingValidationError("Expiry must be in the future.")

    panel = await panel_for_config(db, cfg)
    result = await gateway.update_user(panel, cfg.panel_user_id, traffic_limit_bytes, expires_at, max_clients, node_ids)
    before = {
        "traffic_limit_bytes": int(cfg.traffic_limit_bytes or 0),
        "expires_at": as_utc(cfg.expires_at).isoformat() if cfg.expires_at else None,
    }

    def apply(c: ResellerConfig) -> None:
        c.traffic_limit_bytes = int(traffic_limit_bytes)
        c.expires_at = expires_at
        meta = read_meta(c)
        if max_clients is not None:
            meta.max_clients = int(max_clients)
        if node_ids is not None:
            meta.node_ids = [int(x) for x in node_ids]
        write_meta(c, meta)

    await _finish(
        db,
        config_id,
        EDITED,
        result,
        extra={
            "before": before,
            "after": {
                "traffic_limit_bytes": int(traffic_limit_bytes),
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        },
        apply=apply,
    )

    if _remote_failed(result):
        return OpOutcome(
            REMOTE_FAILED,
            f"Config updated locally, but remote panel update failed after {result.attempts} attempts.",
            config_id,
            result,
        )
    return OpOutcome(OK, "Config updated successfully.", config_id, result)
