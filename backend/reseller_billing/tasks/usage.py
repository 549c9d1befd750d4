from __future__ import annotations
import asyncio
import logging
from sqlalchemy import select

from reseller_billing.core.celery_app import celery_app
from reseller_billing.core.config import settings
from reseller_billing.core.db import AsyncSessionLocal
from reseller_billing.models.reseller import Reseller, ResellerStatus, ResellerType
from reseller_billing.services.billing_settings import get_billing_settings
from reseller_billing.services.locks import redis_lock
from reseller_billing.services.provisioning.gateway import default_gateway
from reseller_billing.services.task_metrics import TaskRunStats
from reseller_billing.services.usage_sync import sync_reseller_usage as sync_one_reseller

logger = logging.getLogger(__name__)

@celery_app.task(name="reseller_billing.tasks.usage.sync_reseller_usage")
def sync_reseller_usage():
    lock_ttl = max(90, int(settings.USAGE_SYNC_SECONDS or 300) * 2)
    with redis_lock("reseller_billing:lock:sync_usage", ttl_seconds=lock_ttl) as ok:
        if not ok:
            logger.info("sync_reseller_usage skipped: lock not acquired")
            return
        asyncio.run(run_usage_sync())

async def run_usage_sync() -> TaskRunStats:
    stats = TaskRunStats()
    gateway = default_gateway()
    batch_size = max(50, min(5000, int(settings.USAGE_SYNC_BATCH_SIZE or 500)))
    last_id = 0
    failure_log_budget = 25

    async with AsyncSessionLocal() as db:
        billing = await get_billing_settings(db)
        while True:
            q = await db.execute(
                select(Reseller.id)
                .where(
                    Reseller.status == ResellerStatus.active,
                    Reseller.type.in_([ResellerType.traffic, ResellerType.wallet]),
                    Reseller.id > last_id,
                )
                .order_by(Reseller.id.asc())
                .limit(batch_size)
            )
            ids = list(q.scalars().all())
            if not ids:
                break

            for rid in ids:
                try:
                    await sync_one_reseller(db, rid, billing, gateway, stats)
                except Exception as e:
                    stats.errors += 1
                    if failure_log_budget > 0:
                        logger.warning("sync_reseller_usage failed reseller_id=%s err=%s", rid, str(e)[:220])
                        failure_log_budget -= 1

            last_id = ids[-1]
            if len(ids) < batch_size:
                break

    logger.info("sync_reseller_usage stats=%s", stats)
    return stats
