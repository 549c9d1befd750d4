from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.api.deps import get_gateway, require_operator
from reseller_billing.core.db import get_db
from reseller_billing.models.reseller import Reseller
from reseller_billing.schemas.ops import LedgerEntryOut, LedgerOut, ReenableRequest, ReenableResult
from reseller_billing.services.ledger import find_chain_breaks, list_entries
from reseller_billing.services.provisioning.gateway import ProvisioningGateway
from reseller_billing.services.suspension import reenable_suspended_configs

router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("/{reseller_id}/ledger", response_model=LedgerOut)
async def ledger(reseller_id: int, limit: int = 500, db: AsyncSession = Depends(get_db)):
    reseller = await db.get(Reseller, reseller_id)
    if not reseller:
        raise HTTPException(status_code=404, detail="Reseller not found")
    entries = await list_entries(db, reseller_id, limit=max(1, min(5000, limit)))
    return LedgerOut(
        reseller_id=reseller_id,
        wallet_balance=reseller.wallet_balance,
        entries=[
            LedgerEntryOut(
                id=e.id,
                reseller_config_id=e.reseller_config_id,
                action_type=e.action_type.value,
                charged_bytes=e.charged_bytes,
                amount_charged=e.amount_charged,
                price_per_gb=e.price_per_gb,
                wallet_balance_before=e.wallet_balance_before,
                wallet_balance_after=e.wallet_balance_after,
                created_at=e.created_at,
            )
            for e in entries
        ],
        chain_breaks=find_chain_breaks(entries),
    )


@router.post("/{reseller_id}/reenable", response_model=ReenableResult)
async def reenable(
    reseller_id: int,
    payload: ReenableRequest,
    db: AsyncSession = Depends(get_db),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    reseller = await db.get(Reseller, reseller_id)
    if not reseller:
        raise HTTPException(status_code=404, detail="Reseller not found")
    stats = await reenable_suspended_configs(db, reseller_id, payload.reason, gateway)
    return ReenableResult(reseller_id=reseller_id, enabled=stats.enabled, failed=stats.failed)
