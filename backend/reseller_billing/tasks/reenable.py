from __future__ import annotations
import asyncio
import logging
from sqlalchemy import select

from reseller_billing.core.celery_app import celery_app
from reseller_billing.core.config import settings
from reseller_billing.core.db import AsyncSessionLocal
from reseller_billing.models.reseller import Reseller, ResellerStatus, ResellerType
from reseller_billing.models.reseller_config import ConfigStatus, ResellerConfig
from reseller_billing.services.billing_settings import get_billing_settings
from reseller_billing.services.config_meta import read_meta
from reseller_billing.services.locks import redis_lock
from reseller_billing.services.provisioning.gateway import default_gateway
from reseller_billing.services.suspension import ReenableStats, reenable_suspended_configs
from reseller_billing.services.task_metrics import TaskRunStats

logger = logging.getLogger(__name__)

@celery_app.task(name="reseller_billing.tasks.reenable.reenable_reseller_configs")
def reenable_reseller_configs(reseller_id: int, reason: str):
    with redis_lock(f"reseller_billing:lock:reenable:{int(reseller_id)}", ttl_seconds=600) as ok:
        if not ok:
            logger.info("reenable_reseller_configs skipped: lock not acquired reseller_id=%s", reseller_id)
            return None
        stats = asyncio.run(run_reenable_for_reseller(int(reseller_id), reason))
        return {"enabled": stats.enabled, "failed": stats.failed}

async def run_reenable_for_reseller(reseller_id: int, reason: str) -> ReenableStats:
    async with AsyncSessionLocal() as db:
        return await reenable_suspended_configs(db, reseller_id, reason, default_gateway())

@celery_app.task(name="reseller_billing.tasks.reenable.reenable_wallet_resellers")
def reenable_wallet_resellers():
    lock_ttl = max(120, int(settings.REENABLE_SWEEP_SECONDS or 600))
    with redis_lock("reseller_billing:lock:reenable_sweep", ttl_seconds=lock_ttl) as ok:
        if not ok:
            logger.info("reenable_wallet_resellers skipped: lock not acquired")
            return
        asyncio.run(run_reenable_sweep())

async def run_reenable_sweep(batch_size: int = 200) -> TaskRunStats:
    """Retry configs still carrying a wallet-suspension marker on resellers that are active again."""
    stats = TaskRunStats()
    gateway = default_gateway()
    last_id = 0

    async with AsyncSessionLocal() as db:
        billing = await get_billing_settings(db)
        if not billing.auto_reenable_enabled:
            logger.info("reenable_wallet_resellers disabled by billing settings")
            return stats

        while True:
            q = await db.execute(
                select(Reseller.id)
                .where(
                    Reseller.type == ResellerType.wallet,
                    Reseller.status == ResellerStatus.active,
                    Reseller.id > last_id,
                )
                .order_by(Reseller.id.asc())
                .limit(batch_size)
            )
            ids = list(q.scalars().all())
            if not ids:
                break

            cq = await db.execute(
                select(ResellerConfig).where(
                    ResellerConfig.reseller_id.in_(ids),
                    ResellerConfig.status == ConfigStatus.disabled,
                )
            )
            pending = sorted({c.reseller_id for c in cq.scalars().all() if read_meta(c).disabled_by_wallet_suspension})

            for rid in pending:
                stats.scanned_resellers += 1
                result = await reenable_suspended_configs(db, rid, "wallet", gateway)
                stats.reenabled_configs += result.enabled
                stats.reenable_failures += result.failed

            last_id = ids[-1]
            if len(ids) < batch_size:
                break

    logger.info("reenable_wallet_resellers stats=%s", stats)
    return stats
