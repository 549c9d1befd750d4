from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from reseller_billing.core.db import Base
from reseller_billing.models.common import TimestampMixin


class TransactionType(str, enum.Enum):
    deposit = "deposit"
    purchase = "purchase"
    refund = "refund"


class TransactionStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reseller_id: Mapped[int] = mapped_column(Integer, ForeignKey("resellers.id"), index=True, nullable=False)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # toman
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.pending, index=True, nullable=False
    )

    gateway: Mapped[str | None] = mapped_column(String(32), index=True, nullable=True)  # starsefar|tetra98|card_to_card
    gateway_reference: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    callback_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # deposit_mode (wallet|traffic), traffic_gb, rate_per_gb, gateway_response ...
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
