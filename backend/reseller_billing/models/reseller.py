from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from reseller_billing.core.db import Base
from reseller_billing.models.common import TimestampMixin


class ResellerType(str, enum.Enum):
    plan = "plan"
    traffic = "traffic"
    wallet = "wallet"


class ResellerStatus(str, enum.Enum):
    active = "active"
    disabled = "disabled"
    suspended = "suspended"  # legacy, treated like suspended_other
    suspended_wallet = "suspended_wallet"
    suspended_traffic = "suspended_traffic"
    suspended_other = "suspended_other"


class Reseller(Base, TimestampMixin):
    __tablename__ = "resellers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)

    type: Mapped[ResellerType] = mapped_column(Enum(ResellerType), default=ResellerType.wallet, nullable=False)
    status: Mapped[ResellerStatus] = mapped_column(Enum(ResellerStatus), default=ResellerStatus.active, nullable=False)

    # NOTE: keep this aligned with DB (PostgreSQL BIGINT); the balance may go negative.
    wallet_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # per-reseller override; NULL means the global billing price applies
    wallet_price_per_gb: Mapped[int | None] = mapped_column(Integer, nullable=True)

    traffic_total_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    traffic_used_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    admin_forgiven_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    window_starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    window_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # NOTE: "metadata" is reserved in SQLAlchemy Declarative.
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
