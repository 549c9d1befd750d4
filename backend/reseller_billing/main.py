from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from reseller_billing.core.config import settings
from reseller_billing.api.v1.router import api_router
from reseller_billing.core.db import AsyncSessionLocal
from sqlalchemy import text
import logging
import redis

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)

if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health():
    db_ok = False
    redis_ok = False
    try:
        async with AsyncSessionLocal() as s:
            await s.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.warning("health db check failed err=%s", str(e)[:220])
    try:
        rds = redis.Redis.from_url(settings.REDIS_URL)
        redis_ok = bool(rds.ping())
    except redis.RedisError as e:
        logger.warning("health redis check failed err=%s", str(e)[:220])
    return {"status": "ok" if db_ok and redis_ok else "degraded", "db_ok": db_ok, "redis_ok": redis_ok}
