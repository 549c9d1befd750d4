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
from reseller_billing.services.wallet_charging import CHARGED, charge_reseller

logger = logging.getLogger(__name__)

@celery_app.task(name="reseller_billing.tasks.wallet.charge_wallet_resellers")
def charge_wallet_resellers():
    lock_ttl = max(300, int(settings.WALLET_CHARGE_SECONDS or 3600))
    with redis_lock("reseller_billing:lock:charge_wallets", ttl_seconds=lock_ttl) as ok:
        if not ok:
            logger.info("charge_wallet_resellers skipped: lock not acquired")
            return
        asyncio.run(run_wallet_charge())

async def run_wallet_charge(dry_run: bool = False, reseller_id: int | None = None, batch_size: int = 200) -> TaskRunStats:
    stats = TaskRunStats()
    gateway = default_gateway()
    last_id = 0
    failure_log_budget = 25

    async with AsyncSessionLocal() as db:
        billing = await get_billing_settings(db)
        if not billing.hourly_charge_enabled:
            logger.info("charge_wallet_resellers disabled by billing settings")
            return stats

        while True:
            q = select(Reseller.id).where(
                Reseller.type == ResellerType.wallet,
                Reseller.status != ResellerStatus.disabled,
                Reseller.id > last_id,
            )
            if reseller_id is not None:
                q = q.where(Reseller.id == reseller_id)
            res = await db.execute(q.order_by(Reseller.id.asc()).limit(batch_size))
            ids = list(res.scalars().all())
            if not ids:
                break

            for rid in ids:
                stats.scanned_resellers += 1
                try:
                    result = await charge_reseller(db, rid, billing, gateway, dry_run=dry_run)
                except Exception as e:
                    stats.errors += 1
                    if failure_log_budget > 0:
                        logger.warning("charge_wallet_resellers failed reseller_id=%s err=%s", rid, str(e)[:220])
                        failure_log_budget -= 1
                    continue
                if result.status == CHARGED:
                    stats.charged_resellers += 1
                    stats.charged_amount += result.cost
                if result.suspended:
                    stats.suspended_resellers += 1

            last_id = ids[-1]
            if len(ids) < batch_size:
                break

    logger.info("charge_wallet_resellers stats=%s", stats)
    return stats
