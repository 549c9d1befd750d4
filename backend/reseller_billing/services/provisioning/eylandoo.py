from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import quote

from reseller_billing.services.provisioning.base import HttpPanelClient, to_int_bytes

BYTES_PER_MB = 1024 ** 2
BYTES_PER_GB = 1024 ** 3

_USAGE_WRAPPERS = ("userInfo", "data", "user", "result", "stats")
_USAGE_KEYS = (
    "total_traffic_bytes",
    "traffic_total_bytes",
    "total_bytes",
    "used_traffic",
    "usage_bytes",
    "bytes_used",
    "data_used",
    "data_used_bytes",
    "traffic_used_bytes",
)
_USAGE_PAIRS = (("upload_bytes", "download_bytes"), ("upload", "download"), ("up", "down"))


def data_limit_payload(data_limit_bytes: int) -> tuple[int, str]:
    """Eylandoo takes whole MB below 1 GB and whole GB above it."""
    if data_limit_bytes < BYTES_PER_GB:
        return max(1, -(-data_limit_bytes // BYTES_PER_MB)), "MB"
    return -(-data_limit_bytes // BYTES_PER_GB), "GB"


def parse_usage(resp: Any) -> int | None:
    if not isinstance(resp, dict) or resp.get("success") is False:
        return None
    wrappers = [resp] + [resp[k] for k in _USAGE_WRAPPERS if isinstance(resp.get(k), dict)]
    best: int | None = None
    for w in wrappers:
        for k in _USAGE_KEYS:
            v = to_int_bytes(w.get(k))
            if v is not None:
                best = v if best is None else max(best, v)
        for up_k, down_k in _USAGE_PAIRS:
            up, down = to_int_bytes(w.get(up_k)), to_int_bytes(w.get(down_k))
            if up is not None and down is not None:
                best = up + down if best is None else max(best, up + down)
    return best


def extract_status(resp: Any) -> str | None:
    if not isinstance(resp, dict):
        return None
    for w in (resp.get("data"), resp):
        if not isinstance(w, dict):
            continue
        s = w.get("status")
        if isinstance(s, str) and s.strip().lower() in ("active", "disabled"):
            return s.strip().lower()
        if isinstance(w.get("is_active"), bool):
            return "active" if w["is_active"] else "disabled"
    return None


class EylandooClient(HttpPanelClient):
    @classmethod
    def has_credentials(cls, credentials: dict[str, Any]) -> bool:
        return bool(credentials.get("api_token"))

    async def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-API-KEY": str(self.credentials.get("api_token") or "")}

    def _path(self, username: str, suffix: str = "") -> str:
        return f"/api/v1/users/{quote(username, safe='')}{suffix}"

    async def _set_active(self, username: str, active: bool) -> bool:
        current = extract_status(await self._request("GET", self._path(username)))
        wanted = "active" if active else "disabled"
        if current == wanted:
            return True
        # the panel only offers a toggle, so an unknown state is toggled blind
        js = await self._request("POST", self._path(username, "/toggle"), {})
        return not (isinstance(js, dict) and js.get("success") is False)

    async def enable_user(self, username: str) -> bool:
        return await self._set_active(username, True)

    async def disable_user(self, username: str) -> bool:
        return await self._set_active(username, False)

    async def delete_user(self, username: str) -> None:
        await self._request("DELETE", self._path(username))

    async def update_user(
        self,
        username: str,
        data_limit_bytes: int | None,
        expires_at: datetime | None,
        max_clients: int | None = None,
        node_ids: list[int] | None = None,
    ) -> None:
        payload: dict[str, Any] = {}
        if data_limit_bytes:
            value, unit = data_limit_payload(int(data_limit_bytes))
            payload["data_limit"] = value
            payload["data_limit_unit"] = unit
        else:
            payload["data_limit"] = None
        if expires_at:
            payload["activation_type"] = "fixed_date"
            payload["expiry_date_str"] = expires_at.strftime("%Y-%m-%d")
        if max_clients is not None:
            payload["max_clients"] = int(max_clients)
        if node_ids:
            payload["nodes"] = [int(x) for x in node_ids]
        await self._request("PUT", self._path(username), payload)

    async def update_user_limits(self, username: str, data_limit_bytes: int | None, expires_at: datetime | None) -> None:
        await self.update_user(username, data_limit_bytes, expires_at)

    async def reset_usage(self, username: str) -> None:
        await self._request("POST", self._path(username, "/reset_traffic"), {})

    async def get_used_bytes(self, username: str) -> int | None:
        return parse_usage(await self._request("GET", self._path(username)))
