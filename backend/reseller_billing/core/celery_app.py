from __future__ import annotations
from celery import Celery
from celery.signals import worker_ready
import logging
from reseller_billing.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "reseller_billing",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["reseller_billing.tasks.wallet", "reseller_billing.tasks.usage", "reseller_billing.tasks.reenable"],
)

celery_app.conf.timezone = "UTC"

charge_every = max(300, min(86400, int(settings.WALLET_CHARGE_SECONDS or 3600)))
usage_every = max(30, min(3600, int(settings.USAGE_SYNC_SECONDS or 300)))
reenable_every = max(60, min(86400, int(settings.REENABLE_SWEEP_SECONDS or 600)))

celery_app.conf.beat_schedule = {
    "charge_wallets_every_interval": {
        "task": "reseller_billing.tasks.wallet.charge_wallet_resellers",
        "schedule": float(charge_every),
    },
    "sync_usage_every_interval": {
        "task": "reseller_billing.tasks.usage.sync_reseller_usage",
        "schedule": float(usage_every),
    },
    "reenable_wallet_resellers_every_interval": {
        "task": "reseller_billing.tasks.reenable.reenable_wallet_resellers",
        "schedule": float(reenable_every),
    },
}


@worker_ready.connect
def _kickoff_sync_tasks(sender=None, **kwargs):
    app = getattr(sender, "app", celery_app)
    for task_name in ("reseller_billing.tasks.usage.sync_reseller_usage",):
        try:
            app.send_task(task_name)
        except Exception as e:
            logger.warning("celery startup task dispatch failed task=%s err=%s", task_name, str(e)[:220])
