from __future__ import annotations

from datetime import datetime
from typing import Any

from reseller_billing.services.provisioning.base import AdapterError, HttpPanelClient, to_int_bytes


class MarzneshinClient(HttpPanelClient):
    """Marzneshin exposes dedicated enable/disable/reset endpoints under /api/users."""

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
            raise AdapterError("Marzneshin credentials must include token OR username/password")
        async with self._client() as client:
            r = await client.post(
                f"{self.base_url}/api/admins/token",
                data={"username": self._username, "password": self._password},
                headers={"Accept": "application/json"},
            )
        if r.status_code >= 400:
            raise AdapterError(f"HTTP {r.status_code} POST /api/admins/token: {r.text[:300]}")
        tok = (r.json() or {}).get("access_token")
        if not tok:
            raise AdapterError("Marzneshin token response missing access_token")
        self._token = str(tok)
        return self._token

    async def _headers(self) -> dict[str, str]:
        token = await self._ensure_token()
        return {"Accept": "application/json", "Authorization": f"Bearer {token}"}

    async def enable_user(self, username: str) -> None:
        await self._request("POST", f"/api/users/{username}/enable", {})

    async def disable_user(self, username: str) -> None:
        await self._request("POST", f"/api/users/{username}/disable", {})

    async def delete_user(self, username: str) -> None:
        await self._request("DELETE", f"/api/users/{username}")

    async def update_user(
        self,
        username: str,
        data_limit_bytes: int | None,
        expires_at: datetime | None,
        max_clients: int | None = None,
        node_ids: list[int] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"username": username, "data_limit": int(data_limit_bytes or 0)}
        if expires_at:
            payload["expire_strategy"] = "fixed_date"
            payload["expire_date"] = expires_at.isoformat()
        else:
            payload["expire_strategy"] = "never"
        if node_ids:
            payload["service_ids"] = [int(x) for x in node_ids]
        await self._request("PUT", f"/api/users/{username}", payload)

    async def update_user_limits(self, username: str, data_limit_bytes: int | None, expires_at: datetime | None) -> None:
        await self.update_user(username, data_limit_bytes, expires_at)

    async def reset_usage(self, username: str) -> None:
        await self._request("POST", f"/api/users/{username}/reset", {})

    async def get_used_bytes(self, username: str) -> int | None:
        js = await self._request("GET", f"/api/users/{username}")
        if isinstance(js, dict):
            return to_int_bytes(js.get("used_traffic"))
        return None
