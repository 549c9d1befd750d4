from __future__ import annotations

from datetime import timedelta

from reseller_billing.models.reseller import ResellerStatus, ResellerType
from reseller_billing.models.reseller_config import ConfigStatus
from reseller_billing.services.usage_sync import TIME_EXPIRED, TRAFFIC_LIMIT, config_limit_reason, sync_reseller_usage

GIB = 1024 ** 3


async def test_sync_pulls_usage_and_keeps_stale_value_on_error(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller()
    panel = await factory.panel()
    ok = await factory.config(reseller, panel, usage_bytes=10)
    broken = await factory.config(reseller, panel, usage_bytes=20)
    panel_client.usage[ok.panel_user_id] = 500
    panel_client.always_fail.add(broken.panel_user_id)

    stats = await sync_reseller_usage(db, reseller.id, billing, gateway)

    assert stats.remote_success == 1
    assert stats.remote_failures == 1
    await db.refresh(ok)
    await db.refresh(broken)
    assert ok.usage_bytes == 500
    assert broken.usage_bytes == 20


async def test_wallet_configs_are_not_limit_enforced(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller()
    panel = await factory.panel()
    cfg = await factory.config(reseller, panel, traffic_limit_bytes=GIB)
    panel_client.usage[cfg.panel_user_id] = 2 * GIB

    stats = await sync_reseller_usage(db, reseller.id, billing, gateway)

    assert stats.disabled_configs == 0
    await db.refresh(cfg)
    assert cfg.status == ConfigStatus.active


async def test_traffic_config_over_limit_is_disabled(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller(type=ResellerType.traffic, traffic_total_bytes=100 * GIB)
    panel = await factory.panel()
    cfg = await factory.config(reseller, panel, traffic_limit_bytes=GIB)
    panel_client.usage[cfg.panel_user_id] = GIB

    stats = await sync_reseller_usage(db, reseller.id, billing, gateway)

    assert stats.disabled_configs == 1
    await db.refresh(cfg)
    await db.refresh(reseller)
    assert cfg.status == ConfigStatus.disabled
    assert reseller.traffic_used_bytes == GIB
    assert reseller.status == ResellerStatus.active


async def test_exhausted_quota_suspends_traffic_reseller(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller(type=ResellerType.traffic, traffic_total_bytes=2 * GIB)
    panel = await factory.panel()
    a = await factory.config(reseller, panel)
    b = await factory.config(reseller, panel, meta={"settled_usage_bytes": GIB})
    panel_client.usage[a.panel_user_id] = GIB // 2
    panel_client.usage[b.panel_user_id] = GIB // 2

    stats = await sync_reseller_usage(db, reseller.id, billing, gateway)

    assert stats.suspended_resellers == 1
    await db.refresh(reseller)
    assert reseller.traffic_used_bytes == 2 * GIB
    assert reseller.status == ResellerStatus.suspended_traffic


async def test_forgiven_bytes_reduce_usage(db, factory, billing, gateway, panel_client):
    reseller = await factory.reseller(type=ResellerType.traffic, traffic_total_bytes=2 * GIB, admin_forgiven_bytes=GIB)
    panel = await factory.panel()
    cfg = await factory.config(reseller, panel)
    panel_client.usage[cfg.panel_user_id] = 2 * GIB

    await sync_reseller_usage(db, reseller.id, billing, gateway)

    await db.refresh(reseller)
    assert reseller.traffic_used_bytes == GIB
    assert reseller.status == ResellerStatus.active


async def test_config_limit_reason(factory, billing, now):
    reseller = await factory.reseller(type=ResellerType.traffic)
    cfg = await factory.config(reseller, usage_bytes=5, traffic_limit_bytes=10)
    assert config_limit_reason(cfg, billing, now) is None
    cfg.usage_bytes = 10
    assert config_limit_reason(cfg, billing, now) == TRAFFIC_LIMIT
    cfg.usage_bytes = 0
    cfg.traffic_limit_bytes = 0
    cfg.expires_at = now - timedelta(days=1)
    assert config_limit_reason(cfg, billing, now) == TIME_EXPIRED
    cfg.expires_at = now + timedelta(days=3)
    assert config_limit_reason(cfg, billing, now) is None
