from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx


class AdapterError(Exception):
    """Generic adapter error (network/auth/panel response)."""


class PanelClient(Protocol):
    """Operations every panel client exposes.

    Mutating calls return True/None on success and either raise AdapterError
    or return False when the panel rejected the request.
    """

    @classmethod
    def has_credentials(cls, credentials: dict[str, Any]) -> bool: ...

    async def enable_user(self, username: str) -> bool | None: ...

    async def disable_user(self, username: str) -> bool | None: ...

    async def delete_user(self, username: str) -> bool | None: ...

    async def update_user(
        self,
        username: str,
        data_limit_bytes: int | None,
        expires_at: datetime | None,
        max_clients: int | None = None,
        node_ids: list[int] | None = None,
    ) -> bool | None: ...

    async def update_user_limits(self, username: str, data_limit_bytes: int | None, expires_at: datetime | None) -> bool | None: ...

    async def reset_usage(self, username: str) -> bool | None: ...

    async def get_used_bytes(self, username: str) -> int | None: ...


class HttpPanelClient:
    """Shared httpx plumbing; a fresh AsyncClient per call."""

    def __init__(
        self,
        base_url: str,
        credentials: dict[str, Any],
        verify_ssl: bool = True,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.credentials = credentials
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(verify=self.verify_ssl, timeout=self.timeout, transport=self._transport)

    async def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        headers = await self._headers()
        async with self._client() as client:
            if payload is None:
                r = await client.request(method, url, headers=headers)
            else:
                r = await client.request(method, url, headers={**headers, "Content-Type": "application/json"}, json=payload)
        if r.status_code >= 400:
            raise AdapterError(f"HTTP {r.status_code} {method} {path}: {r.text[:300]}")
        if not r.text:
            return None
        try:
            return r.json()
        except ValueError:
            return None


def to_int_bytes(v: Any) -> int | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return max(0, v)
    if isinstance(v, float) and v >= 0:
        return int(v)
    if isinstance(v, str) and v.strip().isdigit():
        return int(v.strip())
    return None
