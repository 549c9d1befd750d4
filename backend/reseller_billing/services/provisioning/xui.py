from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import httpx

from reseller_billing.services.provisioning.base import AdapterError, HttpPanelClient, to_int_bytes


class XUIClient(HttpPanelClient):
    """3x-ui panel. Clients are addressed by their email; the panel user id is that email.

    The panel keeps clients inside an inbound's JSON settings, so every update
    reads the inbound, edits the matching client and posts it back.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._username = str(self.credentials.get("username") or "")
        self._password = str(self.credentials.get("password") or "")
        self._webpath = "/" + str(self.credentials.get("webpath") or "").strip("/") if self.credentials.get("webpath") else ""

    @classmethod
    def has_credentials(cls, credentials: dict[str, Any]) -> bool:
        return bool(credentials.get("username") and credentials.get("password"))

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        async with self._client() as client:
            r = await client.post(
                f"{self.base_url}{self._webpath}/login",
                data={"username": self._username, "password": self._password},
            )
            if r.status_code >= 400:
                raise AdapterError(f"HTTP {r.status_code} POST /login: {r.text[:300]}")
            if not _success(r):
                raise AdapterError("X-UI login rejected")
            yield client

    async def _call(self, client: httpx.AsyncClient, method: str, path: str, data: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{self._webpath}{path}"
        if data is None:
            r = await client.request(method, url, headers={"Accept": "application/json"})
        else:
            r = await client.request(method, url, headers={"Accept": "application/json"}, json=data)
        if r.status_code >= 400:
            raise AdapterError(f"HTTP {r.status_code} {method} {path}: {r.text[:300]}")
        if not _success(r):
            raise AdapterError(f"X-UI {method} {path} returned success=false: {r.text[:300]}")
        return r.json().get("obj")

    async def _traffic(self, client: httpx.AsyncClient, email: str) -> dict[str, Any]:
        obj = await self._call(client, "GET", f"/panel/api/inbounds/getClientTraffics/{email}")
        if not isinstance(obj, dict):
            raise AdapterError(f"X-UI client {email} not found")
        return obj

    async def _find_client(self, client: httpx.AsyncClient, email: str) -> tuple[int, dict[str, Any]]:
        traffic = await self._traffic(client, email)
        inbound_id = int(traffic.get("inboundId") or 0)
        inbound = await self._call(client, "GET", f"/panel/api/inbounds/get/{inbound_id}")
        raw = (inbound or {}).get("settings") or "{}"
        settings = json.loads(raw) if isinstance(raw, str) else raw
        for c in settings.get("clients") or []:
            if isinstance(c, dict) and c.get("email") == email:
                return inbound_id, c
        raise AdapterError(f"X-UI client {email} missing from inbound {inbound_id}")

    @staticmethod
    def _client_key(c: dict[str, Any]) -> str:
        # vmess/vless use id, trojan uses password, shadowsocks uses email
        return str(c.get("id") or c.get("password") or c.get("email"))

    async def _update_client(self, email: str, changes: dict[str, Any]) -> None:
        async with self._session() as client:
            inbound_id, c = await self._find_client(client, email)
            c = {**c, **changes}
            await self._call(
                client,
                "POST",
                f"/panel/api/inbounds/updateClient/{self._client_key(c)}",
                {"id": inbound_id, "settings": json.dumps({"clients": [c]})},
            )

    async def enable_user(self, username: str) -> None:
        await self._update_client(username, {"enable": True})

    async def disable_user(self, username: str) -> None:
        await self._update_client(username, {"enable": False})

    async def delete_user(self, username: str) -> None:
        async with self._session() as client:
            inbound_id, c = await self._find_client(client, username)
            await self._call(client, "POST", f"/panel/api/inbounds/{inbound_id}/delClient/{self._client_key(c)}")

    async def update_user(
        self,
        username: str,
        data_limit_bytes: int | None,
        expires_at: datetime | None,
        max_clients: int | None = None,
        node_ids: list[int] | None = None,
    ) -> None:
        changes: dict[str, Any] = {
            "totalGB": int(data_limit_bytes or 0),
            "expiryTime": int(expires_at.timestamp() * 1000) if expires_at else 0,
        }
        if max_clients is not None:
            changes["limitIp"] = int(max_clients)
        await self._update_client(username, changes)

    async def update_user_limits(self, username: str, data_limit_bytes: int | None, expires_at: datetime | None) -> None:
        await self.update_user(username, data_limit_bytes, expires_at)

    async def reset_usage(self, username: str) -> None:
        async with self._session() as client:
            traffic = await self._traffic(client, username)
            inbound_id = int(traffic.get("inboundId") or 0)
            await self._call(client, "POST", f"/panel/api/inbounds/{inbound_id}/resetClientTraffic/{username}")

    async def get_used_bytes(self, username: str) -> int | None:
        async with self._session() as client:
            traffic = await self._traffic(client, username)
        up = to_int_bytes(traffic.get("up"))
        down = to_int_bytes(traffic.get("down"))
        if up is None and down is None:
            return None
        return (up or 0) + (down or 0)


def _success(r: httpx.Response) -> bool:
    try:
        js = r.json()
    except ValueError:
        # older builds answer /login with an empty 200 and a cookie
        return bool(r.cookies)
    return not isinstance(js, dict) or js.get("success", True) is not False
