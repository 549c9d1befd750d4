from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from reseller_billing.models.config_event import AUTO_DISABLED, AUTO_ENABLE_FAILED, AUTO_ENABLED, ResellerConfigEvent
from reseller_billing.models.reseller import ResellerStatus, ResellerType
from reseller_billing.models.reseller_config import ConfigStatus
from reseller_billing.services.config_meta import read_meta
from reseller_billing.services.errors import InvalidTransition
from reseller_billing.services.suspension import (
    TRAFFIC,
    WALLET,
    evaluate_traffic_suspension,
    evaluate_wallet_suspension,
    is_window_valid,
    reenable_suspended_configs,
    start_of_day,
    suspend_reseller,
    transition,
    try_reactivate,
    wallet_can_reactivate,
    wallet_should_suspend,
)

GIB = 1024 ** 3


async def _events(db, config_id):
    q = await db.execute(
        select(ResellerConfigEvent).where(ResellerConfigEvent.reseller_config_id == config_id).order_by(ResellerConfigEvent.id)
    )
    return q.scalars().all()


async def test_threshold_boundary(factory, billing):
    at = await factory.reseller(wallet_balance=-1000)
    below = await factory.reseller(wallet_balance=-1001)

    assert not wallet_should_suspend(at, billing)
    assert wallet_should_suspend(below, billing)


async def test_reactivation_uses_higher_minimum(factory, billing):
    r = await factory.reseller(wallet_balance=-500, status=ResellerStatus.suspended_wallet)

    assert wallet_can_reactivate(r, billing)
    strict = billing.with_overrides(reactivation_min_balance=0)
    assert strict.reactivation_balance == 0
    assert not wallet_can_reactivate(r, strict)
    # a minimum below the threshold never lowers the bar
    assert billing.with_overrides(reactivation_min_balance=-5000).reactivation_balance == -1000


async def test_transition_table(factory):
    r = await factory.reseller(status=ResellerStatus.disabled)
    with pytest.raises(InvalidTransition) as exc:
        transition(r, ResellerStatus.suspended_wallet)
    assert exc.value.current == "disabled"

    transition(r, ResellerStatus.active)
    assert r.status == ResellerStatus.active
    transition(r, ResellerStatus.active)
    assert r.status == ResellerStatus.active


async def test_other_suspension_is_never_lifted_automatically(factory, billing):
    r = await factory.reseller(wallet_balance=10 ** 6, status=ResellerStatus.suspended_other)
    assert try_reactivate(r, billing) is None
    assert r.status == ResellerStatus.suspended_other


def test_start_of_day_uses_app_timezone():
    # 22:00 UTC on Jan 1 is already Jan 2 in Tehran (+03:30)
    dt = datetime(2025, 1, 1, 22, 0, tzinfo=timezone.utc)
    sod = start_of_day(dt, "Asia/Tehran")
    assert sod.astimezone(timezone.utc) == datetime(2025, 1, 1, 20, 30, tzinfo=timezone.utc)


async def test_window_validity(factory, billing, now):
    open_ended = await factory.reseller(type=ResellerType.traffic)
    assert is_window_valid(open_ended, billing, now)

    no_start = await factory.reseller(type=ResellerType.traffic, window_ends_at=now + timedelta(days=5))
    assert not is_window_valid(no_start, billing, now)

    current = await factory.reseller(
        type=ResellerType.traffic,
        window_starts_at=now - timedelta(days=1),
        window_ends_at=now + timedelta(days=5),
    )
    assert is_window_valid(current, billing, now)

    # the end date stops being valid at the start of that day
    ending_today = await factory.reseller(
        type=ResellerType.traffic,
        window_starts_at=now - timedelta(days=10),
        window_ends_at=start_of_day(now, billing.app_timezone) + timedelta(hours=23),
    )
    assert not is_window_valid(ending_today, billing, now)


async def test_wallet_suspension_cascades_to_active_configs(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller(wallet_balance=-1500)
    panel = await factory.panel()
    active = [await factory.config(reseller, panel) for _ in range(2)]
    already_off = await factory.config(reseller, panel, status=ConfigStatus.disabled)

    assert await evaluate_wallet_suspension(db, reseller.id, billing, gateway) is True

    await db.refresh(reseller)
    assert reseller.status == ResellerStatus.suspended_wallet
    assert reseller.meta["suspension_reason"] == "wallet"
    for cfg in active:
        await db.refresh(cfg)
        assert cfg.status == ConfigStatus.disabled
        meta = read_meta(cfg)
        assert meta.disabled_by_wallet_suspension is True
        assert meta.disabled_by_reseller_id == reseller.id
        assert meta.suspension_cycle_at == reseller.meta["suspension_cycle_at"]
        events = await _events(db, cfg.id)
        assert [e.type for e in events] == [AUTO_DISABLED]
        assert events[0].meta["remote_success"] is True
    await db.refresh(already_off)
    assert read_meta(already_off).disabled_by_wallet_suspension is False
    assert panel_client.ops("disable_user") == [c.panel_user_id for c in active]


async def test_suspension_disables_locally_even_when_panel_fails(db, factory, gateway, panel_client):
    reseller = await factory.reseller(wallet_balance=-5000)
    panel = await factory.panel()
    cfg = await factory.config(reseller, panel)
    panel_client.always_fail.add("disable_user")

    stats = await suspend_reseller(db, reseller.id, WALLET, gateway)

    assert stats.disabled == 1
    assert stats.remote_failures == 1
    await db.refresh(cfg)
    assert cfg.status == ConfigStatus.disabled
    assert read_meta(cfg).disabled_by_wallet_suspension is True


async def test_balance_at_threshold_does_not_suspend(db, factory, billing, gateway):
    reseller = await factory.reseller(wallet_balance=-1000)
    assert await evaluate_wallet_suspension(db, reseller.id, billing, gateway) is False
    await db.refresh(reseller)
    assert reseller.status == ResellerStatus.active


async def test_traffic_exhaustion_suspends(db, factory, billing, gateway):
    reseller = await factory.reseller(
        type=ResellerType.traffic, traffic_total_bytes=10 * GIB, traffic_used_bytes=10 * GIB
    )
    cfg = await factory.config(reseller)

    assert await evaluate_traffic_suspension(db, reseller.id, billing, gateway) is True

    await db.refresh(reseller)
    await db.refresh(cfg)
    assert reseller.status == ResellerStatus.suspended_traffic
    assert read_meta(cfg).disabled_by_traffic_suspension is True
    # wallet checks leave traffic resellers alone
    assert await evaluate_wallet_suspension(db, reseller.id, billing, gateway) is False


async def test_reenable_is_remote_first_and_partial(db, factory, gateway, panel_client):
    reseller = await factory.reseller(wallet_balance=5000)
    panel = await factory.panel()
    marker = {"disabled_by_wallet_suspension": True, "disabled_by_reseller_id": 0, "suspension_cycle_at": "x"}
    configs = [await factory.config(reseller, panel, status=ConfigStatus.disabled, meta=dict(marker)) for _ in range(3)]
    manual = await factory.config(reseller, panel, status=ConfigStatus.disabled)
    panel_client.always_fail.add(configs[1].panel_user_id)

    stats = await reenable_suspended_configs(db, reseller.id, WALLET, gateway)

    assert (stats.enabled, stats.failed) == (2, 1)
    for i, cfg in enumerate(configs):
        await db.refresh(cfg)
        if i == 1:
            assert cfg.status == ConfigStatus.disabled
            assert read_meta(cfg).disabled_by_wallet_suspension is True
            assert [e.type for e in await _events(db, cfg.id)] == [AUTO_ENABLE_FAILED]
        else:
            assert cfg.status == ConfigStatus.active
            assert read_meta(cfg).disabled_by_wallet_suspension is False
            assert read_meta(cfg).suspension_cycle_at is None
            assert [e.type for e in await _events(db, cfg.id)] == [AUTO_ENABLED]
    await db.refresh(manual)
    assert manual.status == ConfigStatus.disabled
    assert manual.panel_user_id not in panel_client.ops("enable_user")


async def test_reenable_without_panel_counts_as_failed(db, factory, gateway):
    reseller = await factory.reseller()
    cfg = await factory.config(reseller, status=ConfigStatus.disabled, meta={"disabled_by_traffic_suspension": True})

    stats = await reenable_suspended_configs(db, reseller.id, TRAFFIC, gateway)

    assert (stats.enabled, stats.failed) == (0, 1)
    await db.refresh(cfg)
    assert cfg.status == ConfigStatus.disabled


async def test_reenable_requires_active_reseller(db, factory, gateway, panel_client):
    reseller = await factory.reseller(status=ResellerStatus.suspended_wallet)
    panel = await factory.panel()
    await factory.config(reseller, panel, status=ConfigStatus.disabled, meta={"disabled_by_wallet_suspension": True})

    stats = await reenable_suspended_configs(db, reseller.id, WALLET, gateway)

    assert (stats.enabled, stats.failed) == (0, 0)
    assert panel_client.calls == []
