import argparse
import asyncio
from sqlalchemy import select
from reseller_billing.core.db import AsyncSessionLocal
from reseller_billing.models.reseller import Reseller
from reseller_billing.models.reseller_config import ResellerConfig
from reseller_billing.services.billing_settings import get_billing_settings
from reseller_billing.services.config_meta import read_meta
from reseller_billing.services.ledger import find_chain_breaks, list_entries
from reseller_billing.services.payments import approve_card_deposit
from reseller_billing.services.provisioning.gateway import default_gateway
from reseller_billing.services.settlement import unbilled_bytes, wallet_price_per_gb
from reseller_billing.services.suspension import reenable_suspended_configs
from reseller_billing.tasks.reenable import run_reenable_sweep
from reseller_billing.tasks.usage import run_usage_sync
from reseller_billing.tasks.wallet import run_wallet_charge


async def charge_wallets(dry_run: bool, reseller_id: int | None):
    stats = await run_wallet_charge(dry_run=dry_run, reseller_id=reseller_id)
    mode = "DRY-RUN" if dry_run else "APPLIED"
    print(
        f"[WALLET-CHARGE:{mode}] scanned={stats.scanned_resellers} charged={stats.charged_resellers} "
        f"amount={stats.charged_amount} suspended={stats.suspended_resellers} errors={stats.errors}"
    )


async def sync_usage():
    stats = await run_usage_sync()
    print(
        f"[USAGE-SYNC] resellers={stats.scanned_resellers} configs={stats.scanned_configs} "
        f"remote_ok={stats.remote_success} remote_failed={stats.remote_failures} "
        f"disabled={stats.disabled_configs} suspended={stats.suspended_resellers}"
    )


async def reenable(reseller_id: int | None, reason: str):
    if reseller_id is None:
        stats = await run_reenable_sweep()
        print(f"[REENABLE-SWEEP] resellers={stats.scanned_resellers} enabled={stats.reenabled_configs} failed={stats.reenable_failures}")
        return
    async with AsyncSessionLocal() as db:
        res = await reenable_suspended_configs(db, reseller_id, reason, default_gateway())
    print(f"[REENABLE] reseller_id={reseller_id} reason={reason} enabled={res.enabled} failed={res.failed}")


async def approve_deposit(transaction_id: int, operator: str):
    async with AsyncSessionLocal() as db:
        billing = await get_billing_settings(db)
        outcome = await approve_card_deposit(db, transaction_id, operator, billing, default_gateway())
    print(f"[DEPOSIT] transaction_id={transaction_id} status={outcome.status} reactivated={outcome.reactivated or '-'}")


async def diagnose_wallet(reseller_id: int):
    async with AsyncSessionLocal() as db:
        billing = await get_billing_settings(db)
        reseller = await db.get(Reseller, reseller_id)
        if not reseller:
            raise SystemExit("Reseller not found")
        q = await db.execute(select(ResellerConfig).where(ResellerConfig.reseller_id == reseller_id).order_by(ResellerConfig.id.asc()))
        configs = q.scalars().all()
        entries = await list_entries(db, reseller_id)

    print(f"reseller={reseller.username} type={reseller.type.value} status={reseller.status.value}")
    print(f"wallet_balance={reseller.wallet_balance} threshold={billing.suspension_threshold} price_per_gb={wallet_price_per_gb(reseller, billing)}")
    for c in configs:
        meta = read_meta(c)
        print(
            f"  config_id={c.id} status={c.status.value} usage={c.usage_bytes} settled={meta.settled_usage_bytes} "
            f"unbilled={unbilled_bytes(c)} wallet_marker={meta.disabled_by_wallet_suspension}"
        )
    breaks = find_chain_breaks(entries)
    print(f"ledger_entries={len(entries)} chain_breaks={breaks or 'none'}")


def main():
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="cmd")

    c = sub.add_parser("charge-wallets")
    c.add_argument("--dry-run", action="store_true")
    c.add_argument("--reseller-id", type=int, default=None)

    sub.add_parser("sync-usage")

    r = sub.add_parser("reenable")
    r.add_argument("--reseller-id", type=int, default=None)
    r.add_argument("--reason", choices=["wallet", "traffic"], default="wallet")

    a = sub.add_parser("approve-deposit")
    a.add_argument("--transaction-id", type=int, required=True)
    a.add_argument("--operator", default="cli")

    d = sub.add_parser("diagnose-wallet")
    d.add_argument("--reseller-id", type=int, required=True)

    args = parser.parse_args()
    if args.cmd == "charge-wallets":
        asyncio.run(charge_wallets(args.dry_run, args.reseller_id))
    elif args.cmd == "sync-usage":
        asyncio.run(sync_usage())
    elif args.cmd == "reenable":
        asyncio.run(reenable(args.reseller_id, args.reason))
    elif args.cmd == "approve-deposit":
        asyncio.run(approve_deposit(args.transaction_id, args.operator))
    elif args.cmd == "diagnose-wallet":
        asyncio.run(diagnose_wallet(args.reseller_id))
    else:
        parser.print_help()

if __name__ == "__main__":
    main()
