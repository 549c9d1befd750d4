import hmac

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.core.config import settings
from reseller_billing.core.db import get_db
from reseller_billing.services.billing_settings import BillingSettings, get_billing_settings
from reseller_billing.services.gateways.starsefar import StarsefarClient
from reseller_billing.services.gateways.tetra98 import Tetra98Client
from reseller_billing.services.provisioning.gateway import ProvisioningGateway, default_gateway


async def require_operator(x_operator_token: str | None = Header(default=None)) -> str:
    expected = settings.OPERATOR_API_TOKEN
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Operator API is not configured.")
    if not x_operator_token or not hmac.compare_digest(x_operator_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator token.")
    return "operator"


async def get_billing(db: AsyncSession = Depends(get_db)) -> BillingSettings:
    return await get_billing_settings(db)


def get_gateway() -> ProvisioningGateway:
    return default_gateway()


def get_starsefar_client() -> StarsefarClient:
    return StarsefarClient()


def get_tetra98_client() -> Tetra98Client:
    return Tetra98Client()
