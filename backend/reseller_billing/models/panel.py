from sqlalchemy import String, Integer, Boolean, Enum, JSON
from sqlalchemy.orm import Mapped, mapped_column
from reseller_billing.core.db import Base
from reseller_billing.models.common import TimestampMixin
import enum

class PanelType(str, enum.Enum):
    marzban = "marzban"
    marzneshin = "marzneshin"
    xui = "xui"
    eylandoo = "eylandoo"

class Panel(Base, TimestampMixin):
    __tablename__ = "panels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    panel_type: Mapped[PanelType] = mapped_column(Enum(PanelType), nullable=False)
    base_url: Mapped[str] = mapped_column(String(255), nullable=False)

    credentials: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)  # encrypt at rest in production

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
