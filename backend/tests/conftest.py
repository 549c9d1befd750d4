from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("OPERATOR_API_TOKEN", "test-operator-token")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from reseller_billing import models  # noqa: E402,F401
from reseller_billing.core.db import Base  # noqa: E402
from reseller_billing.models.panel import Panel, PanelType  # noqa: E402
from reseller_billing.models.reseller import Reseller, ResellerStatus, ResellerType  # noqa: E402
from reseller_billing.models.reseller_config import ConfigStatus, ResellerConfig  # noqa: E402
from reseller_billing.models.transaction import Transaction, TransactionStatus, TransactionType  # noqa: E402
from reseller_billing.services.billing_settings import BillingSettings  # noqa: E402
from reseller_billing.services.provisioning.base import AdapterError  # noqa: E402
from reseller_billing.services.provisioning.gateway import ProvisioningGateway  # noqa: E402

GIB = 1024 ** 3


class FakePanelClient:
    """In-memory panel: records calls and fails on demand."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.fail_next: dict[tuple[str, str], int] = {}
        self.always_fail: set[str] = set()
        self.return_false: set[str] = set()
        self.usage: dict[str, int | None] = {}

    def _hit(self, op: str, username: str):
        self.calls.append((op, username))
        if op in self.always_fail or username in self.always_fail:
            raise AdapterError("timeout")
        key = (op, username)
        if self.fail_next.get(key, 0) > 0:
            self.fail_next[key] -= 1
            raise AdapterError(f"HTTP 502 {op}")
        if op in self.return_false:
            return False
        return None

    def ops(self, op: str) -> list[str]:
        return [u for o, u in self.calls if o == op]

    async def enable_user(self, username):
        return self._hit("enable_user", username)

    async def disable_user(self, username):
        return self._hit("disable_user", username)

    async def delete_user(self, username):
        return self._hit("delete_user", username)

    async def update_user(self, username, data_limit_bytes, expires_at, max_clients=None, node_ids=None):
        return self._hit("update_user", username)

    async def update_user_limits(self, username, data_limit_bytes, expires_at):
        return self._hit("update_user_limits", username)

    async def reset_usage(self, username):
        return self._hit("reset_usage", username)

    async def get_used_bytes(self, username):
        self._hit("get_used_bytes", username)
        return self.usage.get(username)


class Factory:
    def __init__(self, db):
        self.db = db
        self._n = 0

    async def reseller(self, **kw) -> Reseller:
        self._n += 1
        data = {
            "username": f"reseller{self._n}",
            "type": ResellerType.wallet,
            "status": ResellerStatus.active,
            "wallet_balance": 0,
        }
        data.update(kw)
        r = Reseller(**data)
        self.db.add(r)
        await self.db.commit()
        return r

    async def panel(self, **kw) -> Panel:
        data = {
            "name": "panel",
            "panel_type": PanelType.marzban,
            "base_url": "https://panel.example",
            "credentials": {"token": "t"},
        }
        data.update(kw)
        p = Panel(**data)
        self.db.add(p)
        await self.db.commit()
        return p

    async def config(self, reseller: Reseller, panel: Panel | None = None, **kw) -> ResellerConfig:
        self._n += 1
        data = {
            "reseller_id": reseller.id,
            "panel_id": panel.id if panel else None,
            "panel_user_id": f"user{self._n}" if panel else None,
            "external_username": f"user{self._n}",
            "usage_bytes": 0,
            "traffic_limit_bytes": 0,
            "status": ConfigStatus.active,
            "meta": {},
        }
        data.update(kw)
        c = ResellerConfig(**data)
        self.db.add(c)
        await self.db.commit()
        return c

    async def deposit(self, reseller: Reseller, amount: int, **kw) -> Transaction:
        data = {
            "reseller_id": reseller.id,
            "amount": amount,
            "type": TransactionType.deposit,
            "status": TransactionStatus.pending,
            "meta": {"deposit_mode": "wallet"},
        }
        data.update(kw)
        t = Transaction(**data)
        self.db.add(t)
        await self.db.commit()
        return t


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def factory(db) -> Factory:
    return Factory(db)


@pytest.fixture
def billing() -> BillingSettings:
    return BillingSettings()


@pytest.fixture
def panel_client() -> FakePanelClient:
    return FakePanelClient()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def gateway(panel_client, sleeps) -> ProvisioningGateway:
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return ProvisioningGateway(
        max_attempts=3,
        retry_delays=[0, 1, 3],
        rate_limit_seconds=0,
        sleep=fake_sleep,
        client_factory=lambda *args, **kwargs: panel_client,
    )


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)
