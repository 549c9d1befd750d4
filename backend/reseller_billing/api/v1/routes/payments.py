from __future__ import annotations
import json
import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.api.deps import (
    get_billing,
    get_gateway,
    get_starsefar_client,
    get_tetra98_client,
    require_operator,
)
from reseller_billing.core.db import get_db
from reseller_billing.schemas.payments import CardDecisionRequest, PaymentResult
from reseller_billing.services import payments
from reseller_billing.services.billing_settings import BillingSettings
from reseller_billing.services.errors import BillingValidationError, NotFoundError
from reseller_billing.services.gateways.starsefar import StarsefarClient
from reseller_billing.services.gateways.tetra98 import Tetra98Client
from reseller_billing.services.provisioning.gateway import ProvisioningGateway

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_payload(request: Request) -> dict:
    data: dict = dict(request.query_params)
    body = await request.body()
    if not body:
        return data
    ctype = request.headers.get("content-type", "")
    if "json" in ctype:
        try:
            parsed = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body.")
        if isinstance(parsed, dict):
            data.update(parsed)
    else:
        data.update(dict(parse_qsl(body.decode("utf-8", "replace"))))
    return data


async def _settle(call) -> dict:
    try:
        outcome = await call
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BillingValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return outcome.as_dict()


@router.post("/starsefar/webhook", response_model=PaymentResult)
async def starsefar_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    payload = await _read_payload(request)
    return await _settle(payments.handle_starsefar_webhook(db, payload, billing, gateway))


@router.get("/starsefar/{order_id}/status", response_model=PaymentResult)
async def starsefar_status(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
    client: StarsefarClient = Depends(get_starsefar_client),
):
    return await _settle(payments.poll_starsefar_order(db, order_id, client, billing, gateway))


@router.api_route("/tetra98/callback", methods=["GET", "POST"], response_model=PaymentResult)
async def tetra98_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
    client: Tetra98Client = Depends(get_tetra98_client),
):
    payload = await _read_payload(request)
    return await _settle(payments.handle_tetra98_callback(db, payload, client, billing, gateway))


@router.post("/{transaction_id}/approve", response_model=PaymentResult, dependencies=[Depends(require_operator)])
async def approve_deposit(
    transaction_id: int,
    payload: CardDecisionRequest,
    db: AsyncSession = Depends(get_db),
    billing: BillingSettings = Depends(get_billing),
    gateway: ProvisioningGateway = Depends(get_gateway),
):
    return await _settle(payments.approve_card_deposit(db, transaction_id, payload.operator, billing, gateway))


@router.post("/{transaction_id}/reject", response_model=PaymentResult, dependencies=[Depends(require_operator)])
async def reject_deposit(
    transaction_id: int,
    payload: CardDecisionRequest,
    db: AsyncSession = Depends(get_db),
):
    return await _settle(payments.reject_card_deposit(db, transaction_id, payload.operator, payload.note))
