from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.core.config import settings
from reseller_billing.models.app_setting import AppSetting

BILLING_SETTINGS_KEY = "billing"
BYTES_PER_GB = 1024 ** 3


@dataclass(frozen=True)
class BillingSettings:
    """Immutable billing configuration passed explicitly into every billing call."""

    wallet_price_per_gb: int = 780
    suspension_threshold: int = -1000
    traffic_price_per_gb: int = 750
    bytes_per_gb: int = BYTES_PER_GB
    reactivation_min_balance: int | None = None
    minimum_delta_bytes_to_charge: int = 5 * 1024 * 1024
    charge_idempotency_minutes: int = 55
    charge_enabled: bool = True
    hourly_charge_enabled: bool = True
    auto_reenable_enabled: bool = True
    app_timezone: str = "Asia/Tehran"

    @property
    def reactivation_balance(self) -> int:
        """Lowest balance at which a wallet-suspended reseller comes back."""
        if self.reactivation_min_balance is None:
            return self.suspension_threshold
        return max(self.suspension_threshold, self.reactivation_min_balance)

    def with_overrides(self, **kwargs) -> "BillingSettings":
        return replace(self, **kwargs)


def base_billing_settings() -> BillingSettings:
    return BillingSettings(
        wallet_price_per_gb=int(settings.WALLET_PRICE_PER_GB),
        suspension_threshold=int(settings.WALLET_SUSPENSION_THRESHOLD),
        traffic_price_per_gb=int(settings.TRAFFIC_PRICE_PER_GB),
        reactivation_min_balance=settings.WALLET_REACTIVATION_MIN_BALANCE,
        minimum_delta_bytes_to_charge=max(0, int(settings.WALLET_MINIMUM_DELTA_BYTES)),
        charge_idempotency_minutes=max(0, int(settings.WALLET_CHARGE_IDEMPOTENCY_MINUTES)),
        charge_enabled=bool(settings.WALLET_CHARGE_ENABLED),
        hourly_charge_enabled=bool(settings.WALLET_HOURLY_CHARGE_ENABLED),
        auto_reenable_enabled=bool(settings.WALLET_AUTO_REENABLE_ENABLED),
        app_timezone=settings.APP_TIMEZONE,
    )


def _clean_int(v, fallback: int | None, min_value: int | None = None) -> int | None:
    if v is None or isinstance(v, bool):
        return fallback
    try:
        n = int(v)
    except (TypeError, ValueError):
        return fallback
    if min_value is not None and n < min_value:
        return fallback
    return n


def _clean_bool(v, fallback: bool) -> bool:
    if isinstance(v, bool):
        return v
    s = str(v or "").strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    return fallback


def normalize_billing_settings(raw: dict | None, base: BillingSettings | None = None) -> BillingSettings:
    out = base or base_billing_settings()
    if not isinstance(raw, dict):
        return out

    return replace(
        out,
        wallet_price_per_gb=_clean_int(raw.get("wallet_price_per_gb"), out.wallet_price_per_gb, 0),
        suspension_threshold=_clean_int(raw.get("suspension_threshold"), out.suspension_threshold),
        traffic_price_per_gb=_clean_int(raw.get("traffic_price_per_gb"), out.traffic_price_per_gb, 0),
        reactivation_min_balance=_clean_int(raw.get("reactivation_min_balance"), out.reactivation_min_balance),
        minimum_delta_bytes_to_charge=_clean_int(
            raw.get("minimum_delta_bytes_to_charge"), out.minimum_delta_bytes_to_charge, 0
        ),
        charge_idempotency_minutes=_clean_int(
            raw.get("charge_idempotency_minutes"), out.charge_idempotency_minutes, 0
        ),
        charge_enabled=_clean_bool(raw.get("charge_enabled"), out.charge_enabled),
        hourly_charge_enabled=_clean_bool(raw.get("hourly_charge_enabled"), out.hourly_charge_enabled),
        auto_reenable_enabled=_clean_bool(raw.get("auto_reenable_enabled"), out.auto_reenable_enabled),
    )


async def get_billing_settings(db: AsyncSession) -> BillingSettings:
    q = await db.execute(select(AppSetting).where(AppSetting.key == BILLING_SETTINGS_KEY))
    row = q.scalar_one_or_none()
    return normalize_billing_settings(row.value if row else None)


async def set_billing_settings(db: AsyncSession, value: dict) -> BillingSettings:
    normalized = normalize_billing_settings(value)
    stored = asdict(normalized)
    stored.pop("bytes_per_gb", None)
    stored.pop("app_timezone", None)
    q = await db.execute(select(AppSetting).where(AppSetting.key == BILLING_SETTINGS_KEY))
    row = q.scalar_one_or_none()
    if row:
        row.value = stored
    else:
        row = AppSetting(key=BILLING_SETTINGS_KEY, value=stored)
        db.add(row)
    await db.commit()
    return normalized
