from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from reseller_billing.core.db import Base
from reseller_billing.models.common import TimestampMixin


class ConfigStatus(str, enum.Enum):
    active = "active"
    disabled = "disabled"
    expired = "expired"
    deleted = "deleted"


class ResellerConfig(Base, TimestampMixin):
    """A VPN account provisioned on a remote panel on behalf of a reseller."""

    __tablename__ = "reseller_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reseller_id: Mapped[int] = mapped_column(Integer, ForeignKey("resellers.id"), index=True, nullable=False)
    panel_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("panels.id"), index=True, nullable=True)
    panel_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_username: Mapped[str] = mapped_column(String(128), nullable=False)

    usage_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    traffic_limit_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[ConfigStatus] = mapped_column(Enum(ConfigStatus), default=ConfigStatus.active, index=True, nullable=False)
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Persisted as JSON; read and written through services.config_meta.ConfigMeta.
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
