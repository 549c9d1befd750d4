from __future__ import annotations

import enum

from sqlalchemy import BigInteger, Enum, ForeignKey, Integer, JSON, event
from sqlalchemy.orm import Mapped, mapped_column

from reseller_billing.core.db import Base
from reseller_billing.models.common import TimestampMixin
from reseller_billing.services.errors import LedgerImmutableError


class LedgerAction(str, enum.Enum):
    reset_traffic = "reset_traffic"
    delete_config = "delete_config"
    hourly_charge = "hourly_charge"
    wallet_credit = "wallet_credit"


class BillingLedgerEntry(Base, TimestampMixin):
    __tablename__ = "billing_ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reseller_id: Mapped[int] = mapped_column(Integer, ForeignKey("resellers.id"), index=True, nullable=False)
    reseller_config_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("reseller_configs.id"), index=True, nullable=True)

    action_type: Mapped[LedgerAction] = mapped_column(Enum(LedgerAction), nullable=False)
    charged_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    amount_charged: Mapped[int] = mapped_column(BigInteger, nullable=False)  # negative for credits
    price_per_gb: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    wallet_balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    wallet_balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)


@event.listens_for(BillingLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"billing ledger entry {target.id} is append-only")


@event.listens_for(BillingLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"billing ledger entry {target.id} cannot be deleted")
