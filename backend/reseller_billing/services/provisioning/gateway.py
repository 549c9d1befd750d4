from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.core.config import settings
from reseller_billing.models.panel import Panel
from reseller_billing.models.reseller_config import ResellerConfig
from reseller_billing.services.provisioning.base import PanelClient
from reseller_billing.services.provisioning.factory import build_client, get_client_class

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteActionResult:
    success: bool
    attempts: int
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def event_meta(self) -> dict[str, Any]:
        return {"remote_success": self.success, "attempts": self.attempts, "last_error": self.last_error}


NO_PANEL = RemoteActionResult(success=False, attempts=0, last_error="No panel configured")
MISSING_CREDENTIALS = RemoteActionResult(success=False, attempts=0, last_error="Missing credentials")


class ProvisioningGateway:
    """Retry-wrapped access to remote panels.

    Never raises for remote failures: every mutating call returns a RemoteActionResult.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        retry_delays: list[float] | None = None,
        rate_limit_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        client_factory: Callable[..., PanelClient] = build_client,
    ):
        self.max_attempts = max(1, int(max_attempts if max_attempts is not None else settings.REMOTE_MAX_ATTEMPTS))
        self.retry_delays = list(retry_delays if retry_delays is not None else settings.remote_retry_delays) or [0.0]
        self.rate_limit_seconds = float(
            rate_limit_seconds if rate_limit_seconds is not None else settings.REMOTE_RATE_LIMIT_SECONDS
        )
        self._sleep = sleep
        self._client_factory = client_factory

    def _delay_for(self, attempt: int) -> float:
        return self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]

    async def pace(self) -> None:
        """Pause between bulk operations so a panel is not hit faster than ~3 ops/s."""
        if self.rate_limit_seconds > 0:
            await self._sleep(self.rate_limit_seconds)

    def _resolve(self, panel: Panel | None, panel_user_id: str | None) -> tuple[PanelClient | None, RemoteActionResult | None]:
        if panel is None or not panel_user_id:
            return None, NO_PANEL
        cls = get_client_class(panel.panel_type)
        if cls is None:
            pt = getattr(panel.panel_type, "value", panel.panel_type)
            return None, RemoteActionResult(success=False, attempts=0, last_error=f"Unsupported panel type: {pt}")
        creds = panel.credentials or {}
        if not panel.base_url or not cls.has_credentials(creds):
            logger.warning("provisioning missing credentials panel_id=%s panel_user_id=%s", panel.id, panel_user_id)
            return None, MISSING_CREDENTIALS
        return self._client_factory(panel.panel_type, panel.base_url, creds), None

    async def _run(
        self,
        op: str,
        panel: Panel | None,
        panel_user_id: str | None,
        call: Callable[[PanelClient], Awaitable[Any]],
    ) -> RemoteActionResult:
        client, early = self._resolve(panel, panel_user_id)
        if early is not None:
            return early

        last_error: str | None = None
        for attempt in range(1, self.max_attempts + 1):
            delay = self._delay_for(attempt)
            if delay > 0:
                await self._sleep(delay)
            try:
                out = await call(client)
            except Exception as e:
                last_error = str(e)[:500] or e.__class__.__name__
                logger.warning(
                    "provisioning %s failed attempt=%s/%s panel_id=%s panel_user_id=%s err=%s",
                    op,
                    attempt,
                    self.max_attempts,
                    panel.id,
                    panel_user_id,
                    last_error[:220],
                )
                continue
            if out is False:
                last_error = "Operation returned false"
                logger.warning(
                    "provisioning %s returned false attempt=%s/%s panel_id=%s panel_user_id=%s",
                    op,
                    attempt,
                    self.max_attempts,
                    panel.id,
                    panel_user_id,
                )
                continue
            if attempt > 1:
                logger.info("provisioning %s succeeded after attempts=%s panel_user_id=%s", op, attempt, panel_user_id)
            return RemoteActionResult(success=True, attempts=attempt, last_error=None)

        logger.error(
            "provisioning %s gave up attempts=%s panel_id=%s panel_user_id=%s err=%s",
            op,
            self.max_attempts,
            panel.id,
            panel_user_id,
            (last_error or "")[:220],
        )
        return RemoteActionResult(success=False, attempts=self.max_attempts, last_error=last_error)

    async def enable_user(self, panel: Panel | None, panel_user_id: str | None) -> RemoteActionResult:
        return await self._run("enable_user", panel, panel_user_id, lambda c: c.enable_user(panel_user_id))

    async def disable_user(self, panel: Panel | None, panel_user_id: str | None) -> RemoteActionResult:
        return await self._run("disable_user", panel, panel_user_id, lambda c: c.disable_user(panel_user_id))

    async def delete_user(self, panel: Panel | None, panel_user_id: str | None) -> RemoteActionResult:
        return await self._run("delete_user", panel, panel_user_id, lambda c: c.delete_user(panel_user_id))

    async def reset_user_usage(self, panel: Panel | None, panel_user_id: str | None) -> RemoteActionResult:
        return await self._run("reset_user_usage", panel, panel_user_id, lambda c: c.reset_usage(panel_user_id))

    async def update_user_limits(
        self,
        panel: Panel | None,
        panel_user_id: str | None,
        data_limit_bytes: int | None,
        expires_at: datetime | None,
    ) -> RemoteActionResult:
        return await self._run(
            "update_user_limits",
            panel,
            panel_user_id,
            lambda c: c.update_user_limits(panel_user_id, data_limit_bytes, expires_at),
        )

    async def update_user(
        self,
        panel: Panel | None,
        panel_user_id: str | None,
        data_limit_bytes: int | None,
        expires_at: datetime | None,
        max_clients: int | None = None,
        node_ids: list[int] | None = None,
    ) -> RemoteActionResult:
        return await self._run(
            "update_user",
            panel,
            panel_user_id,
            lambda c: c.update_user(panel_user_id, data_limit_bytes, expires_at, max_clients, node_ids),
        )

    async def get_used_bytes(self, panel: Panel | None, panel_user_id: str | None) -> int | None:
        """Single attempt; AdapterError propagates so the sync job can keep the stale value."""
        client, early = self._resolve(panel, panel_user_id)
        if early is not None:
            return None
        return await client.get_used_bytes(panel_user_id)


async def panel_for_config(db: AsyncSession, config: ResellerConfig) -> Panel | None:
    if not config.panel_id:
        return None
    return await db.get(Panel, config.panel_id)


def default_gateway() -> ProvisioningGateway:
    return ProvisioningGateway()
