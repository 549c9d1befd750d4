from fastapi import APIRouter
from reseller_billing.api.v1.routes import configs, payments, resellers

api_router = APIRouter()
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(configs.router, prefix="/configs", tags=["configs"])
api_router.include_router(resellers.router, prefix="/resellers", tags=["resellers"])
