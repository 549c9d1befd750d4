from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.models.ledger import BillingLedgerEntry, LedgerAction
from reseller_billing.models.reseller import Reseller

logger = logging.getLogger(__name__)


def apply_wallet_change(
    db: AsyncSession,
    reseller: Reseller,
    *,
    action: LedgerAction,
    amount_charged: int,
    charged_bytes: int = 0,
    price_per_gb: int = 0,
    reseller_config_id: int | None = None,
    meta: dict[str, Any] | None = None,
) -> BillingLedgerEntry:
    """Move the wallet balance by -amount_charged and append the matching ledger row.

    The caller owns the transaction and must hold the reseller row lock.
    """
    before = int(reseller.wallet_balance or 0)
    after = before - int(amount_charged)
    reseller.wallet_balance = after

    entry = BillingLedgerEntry(
        reseller_id=reseller.id,
        reseller_config_id=reseller_config_id,
        action_type=action,
        charged_bytes=int(charged_bytes),
        amount_charged=int(amount_charged),
        price_per_gb=int(price_per_gb),
        wallet_balance_before=before,
        wallet_balance_after=after,
        meta=dict(meta or {}),
    )
    db.add(entry)
    logger.info(
        "ledger %s reseller_id=%s config_id=%s amount=%s balance %s -> %s",
        action.value,
        reseller.id,
        reseller_config_id,
        amount_charged,
        before,
        after,
    )
    return entry


def credit_wallet(db: AsyncSession, reseller: Reseller, amount: int, meta: dict[str, Any] | None = None) -> BillingLedgerEntry:
    if amount <= 0:
        raise ValueError("credit amount must be positive")
    return apply_wallet_change(db, reseller, action=LedgerAction.wallet_credit, amount_charged=-int(amount), meta=meta)


async def list_entries(db: AsyncSession, reseller_id: int, limit: int | None = None) -> list[BillingLedgerEntry]:
    q = select(BillingLedgerEntry).where(BillingLedgerEntry.reseller_id == reseller_id).order_by(BillingLedgerEntry.id.asc())
    if limit:
        q = q.limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


def find_chain_breaks(entries: list[BillingLedgerEntry]) -> list[int]:
    """Ids of entries whose balance_before does not match the previous entry's balance_after."""
    breaks: list[int] = []
    prev: BillingLedgerEntry | None = None
    for e in entries:
        if prev is not None and int(prev.wallet_balance_after) != int(e.wallet_balance_before):
            breaks.append(e.id)
        if int(e.wallet_balance_before) - int(e.amount_charged) != int(e.wallet_balance_after):
            breaks.append(e.id)
        prev = e
    return breaks
