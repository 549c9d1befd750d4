from __future__ import annotations

from sqlalchemy import ForeignKey, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from reseller_billing.core.db import Base
from reseller_billing.models.common import TimestampMixin

USAGE_RESET = "usage_reset"
FINAL_SETTLEMENT = "final_settlement"
MANUAL_DISABLED = "manual_disabled"
MANUAL_ENABLED = "manual_enabled"
DELETED = "deleted"
EDITED = "edited"
AUTO_DISABLED = "auto_disabled"
AUTO_ENABLED = "auto_enabled"
AUTO_ENABLE_FAILED = "auto_enable_failed"


class ResellerConfigEvent(Base, TimestampMixin):
    __tablename__ = "reseller_config_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reseller_config_id: Mapped[int] = mapped_column(Integer, ForeignKey("reseller_configs.id"), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
