from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

from reseller_billing.models.reseller_config import ResellerConfig


def _as_int(v: Any, fallback: int = 0) -> int:
    if v is None or isinstance(v, bool):
        return fallback
    try:
        return int(v)
    except (TypeError, ValueError):
        return fallback


def _as_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes")
    return bool(v)


def _as_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


@dataclass
class ConfigMeta:
    """Typed view over ResellerConfig.meta.

    Unknown keys are kept in `extra` and written back untouched.
    """

    settled_usage_bytes: int = 0
    billed_usage_bytes: int = 0
    last_reset_at: str | None = None
    last_settlement_at: str | None = None
    last_settlement_action: str | None = None
    last_settlement_bytes: int = 0
    last_settlement_cost: int = 0
    disabled_by_wallet_suspension: bool = False
    disabled_by_traffic_suspension: bool = False
    disabled_by_reseller_id: int | None = None
    suspension_cycle_at: str | None = None
    max_clients: int | None = None
    node_ids: list[int] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict | None) -> "ConfigMeta":
        raw = dict(raw or {})
        known = {f.name for f in fields(cls)} - {"extra"}
        extra = {k: v for k, v in raw.items() if k not in known}

        node_ids: list[int] = []
        if isinstance(raw.get("node_ids"), list):
            for x in raw["node_ids"]:
                n = _as_int(x, -1)
                if n > 0:
                    node_ids.append(n)

        reseller_id = raw.get("disabled_by_reseller_id")
        max_clients = raw.get("max_clients")
        return cls(
            settled_usage_bytes=max(0, _as_int(raw.get("settled_usage_bytes"))),
            billed_usage_bytes=max(0, _as_int(raw.get("billed_usage_bytes"))),
            last_reset_at=_as_str(raw.get("last_reset_at")),
            last_settlement_at=_as_str(raw.get("last_settlement_at")),
            last_settlement_action=_as_str(raw.get("last_settlement_action")),
            last_settlement_bytes=_as_int(raw.get("last_settlement_bytes")),
            last_settlement_cost=_as_int(raw.get("last_settlement_cost")),
            disabled_by_wallet_suspension=_as_bool(raw.get("disabled_by_wallet_suspension")),
            disabled_by_traffic_suspension=_as_bool(raw.get("disabled_by_traffic_suspension")),
            disabled_by_reseller_id=_as_int(reseller_id) if reseller_id is not None else None,
            suspension_cycle_at=_as_str(raw.get("suspension_cycle_at")),
            max_clients=_as_int(max_clients) if max_clients is not None else None,
            node_ids=node_ids,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extra)
        out["settled_usage_bytes"] = int(self.settled_usage_bytes)
        out["billed_usage_bytes"] = int(self.billed_usage_bytes)
        for k in ("last_reset_at", "last_settlement_at", "last_settlement_action", "suspension_cycle_at"):
            v = getattr(self, k)
            if v is not None:
                out[k] = v
        if self.last_settlement_action is not None:
            out["last_settlement_bytes"] = int(self.last_settlement_bytes)
            out["last_settlement_cost"] = int(self.last_settlement_cost)
        if self.disabled_by_wallet_suspension:
            out["disabled_by_wallet_suspension"] = True
        if self.disabled_by_traffic_suspension:
            out["disabled_by_traffic_suspension"] = True
        if self.disabled_by_reseller_id is not None:
            out["disabled_by_reseller_id"] = int(self.disabled_by_reseller_id)
        if self.max_clients is not None:
            out["max_clients"] = int(self.max_clients)
        if self.node_ids:
            out["node_ids"] = list(self.node_ids)
        return out

    def add_settled(self, nbytes: int) -> None:
        if nbytes < 0:
            raise ValueError("settled usage can only grow")
        self.settled_usage_bytes += int(nbytes)

    def suspension_flag(self, reason: str) -> bool:
        return bool(getattr(self, f"disabled_by_{reason}_suspension"))

    def mark_suspended(self, reason: str, reseller_id: int, cycle_at: str) -> None:
        setattr(self, f"disabled_by_{reason}_suspension", True)
        self.disabled_by_reseller_id = reseller_id
        self.suspension_cycle_at = cycle_at

    def clear_suspension(self, reason: str) -> None:
        setattr(self, f"disabled_by_{reason}_suspension", False)
        if not (self.disabled_by_wallet_suspension or self.disabled_by_traffic_suspension):
            self.disabled_by_reseller_id = None
            self.suspension_cycle_at = None


SUSPENSION_REASONS = ("wallet", "traffic")


def read_meta(config: ResellerConfig) -> ConfigMeta:
    return ConfigMeta.from_dict(config.meta)


def write_meta(config: ResellerConfig, meta: ConfigMeta) -> None:
    # JSON columns only track reassignment, so always store a fresh dict
    config.meta = meta.to_dict()


def total_usage_bytes(config: ResellerConfig) -> int:
    return max(0, int(config.usage_bytes or 0)) + read_meta(config).settled_usage_bytes
