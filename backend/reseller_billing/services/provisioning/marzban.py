from __future__ import annotations

from datetime import datetime
from typing import Any

from reseller_billing.services.provisioning.base import AdapterError, HttpPanelClient, to_int_bytes


class MarzbanClient(HttpPanelClient):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._username = str(self.credentials.get("username") or "")
        self._password = str(self.credentials.get("password") or "")
        self._token = str(self.credentials.get("token") or "")

    @classmethod
    def has_credentials(cls, credentials: dict[str, Any]) -> bool:
        return bool(credentials.get("token") or (credentials.get("username") and credentials.get("password")))

    async def _ensure_token(self) -> str:
        if self._token:
            return self._token
        if not (self._username and self._password):
            raise AdapterError("Marzban credentials must include token OR username/password")

        url = f"{self.base_url}/api/admin/token"
        data = {
            "grant_type": "password",
            "username": self._username,
            "password": self._password,
            "scope": "",
        }
        async with self._client() as client:
            r = await client.post(url, data=data, headers={"Accept": "application/json"})
        if r.status_code >= 400:
            raise AdapterError(f"HTTP {r.status_code} POST /api/admin/token: {r.text[:300]}")
        js = r.json()
        tok = js.get("access_token")
        if not tok:
            raise AdapterError("Marzban token response missing access_token")
        self._token = str(tok)
        return self._token

    async def _headers(self) -> dict[str, str]:
        token = await self._ensure_token()
        return {"Accept": "application/json", "Authorization": f"Bearer {token}"}

    async def set_status(self, username: str, status: str) -> None:
        await self._request("PUT", f"/api/user/{username}", {"status": status})

    async def enable_user(self, username: str) -> None:
        await self.set_status(username, "active")

    async def disable_user(self, username: str) -> None:
        await self.set_status(username, "disabled")

    async def delete_user(self, username: str) -> None:
        await self._request("DELETE", f"/api/user/{username}")

    async def update_user(
        self,
        username: str,
        data_limit_bytes: int | None,
        expires_at: datetime | None,
        max_clients: int | None = None,
        node_ids: list[int] | None = None,
    ) -> None:
        # Marzban has no per-user client cap or node list; only limits apply.
        await self.update_user_limits(username, data_limit_bytes, expires_at)

    async def update_user_limits(self, username: str, data_limit_bytes: int | None, expires_at: datetime | None) -> None:
        payload: dict[str, Any] = {
            "data_limit": int(data_limit_bytes) if data_limit_bytes else 0,  # 0 = unlimited
            "expire": int(expires_at.timestamp()) if expires_at else 0,
        }
        await self._request("PUT", f"/api/user/{username}", payload)

    async def reset_usage(self, username: str) -> None:
        await self._request("POST", f"/api/user/{username}/reset", {})

    async def get_used_bytes(self, username: str) -> int | None:
        js = await self._request("GET", f"/api/user/{username}")
        if isinstance(js, dict):
            return to_int_bytes(js.get("used_traffic"))
        return None
