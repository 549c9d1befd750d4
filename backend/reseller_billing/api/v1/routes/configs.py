from __future__ import annotations
import logging
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.api.deps import get_billing, get_gateway, require_operator
from reseller_billing.core.db import get_db
from reseller_billing.schemas.ops import ConfigOpResult, UpdateLimitsRequest
from reseller_billing.services import config_ops
from reseller_billing.services.billing_settings import BillingSettings
from reseller_billing.services.errors import BillingValidationError, NotFoundError
from reseller_billing.services.provisioning.gateway import ProvisioningGateway

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_operator)])


async def _run(config_id: int, call):
    try:
        outcome = await call
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BillingValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("config operation failed config_id=%s", config_id)
        failed = config_ops.OpOutcome(config_ops.FAILED, "Operation failed. Please try again.", config_id)
        return JSONResponse(status_code=500, content=failed.as_dict())
    return outcome.as_dict()


@router.post("/{config_id}/reset-traffic", response_model=ConfigOpResult)
async def reset_traffic(
    config_id: int,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    return await _run(config_id, config_ops.reset_config_traffic(db, config_id, billing, gateway))


@router.post("/{config_id}/disable", response_model=ConfigOpResult)
async def disable(
    config_id: int,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    return await _run(config_id, config_ops.disable_config(db, config_id, billing, gateway))


@router.post("/{config_id}/enable", response_model=ConfigOpResult)
async def enable(
    config_id: int,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    return await _run(config_id, config_ops.enable_config(db, config_id, billing, gateway))


@router.delete("/{config_id}", response_model=ConfigOpResult)
async def delete(
    config_id: int,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    return await _run(config_id, config_ops.delete_config(db, config_id, billing, gateway))


@router.put("/{config_id}/limits", response_model=ConfigOpResult)
async def update_limits(
    config_id: int,
    payload: UpdateLimitsRequest,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    limit_bytes = int(payload.traffic_limit_gb * billing.bytes_per_gb)
    return await _run(
        config_id,
        config_ops.update_config_limits(
            db,
            config_id,
            limit_bytes,
            payload.expires_at,
            gateway,
            max_clients=payload.max_clients,
            node_ids=payload.node_ids,
        ),
    )
