from __future__ import annotations

from typing import Any

import httpx

from reseller_billing.core.config import settings
from reseller_billing.services.gateways.base import PaymentGatewayError

GATEWAY_NAME = "tetra98"
STATUS_OK = "100"


class Tetra98Client:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.TETRA98_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.TETRA98_API_KEY
        self.timeout = float(timeout or settings.HTTP_TIMEOUT_SECONDS)
        self._transport = transport

    async def verify(self, authority: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                r = await client.post(
                    f"{self.base_url}/api/verify",
                    json={"authority": authority, "ApiKey": self.api_key},
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                raise PaymentGatewayError(f"tetra98 verify {authority}: {e}") from e
        if r.status_code >= 400:
            raise PaymentGatewayError(f"HTTP {r.status_code} POST /api/verify: {r.text[:300]}")
        js = r.json()
        return js if isinstance(js, dict) else {}


def is_ok_status(status: Any) -> bool:
    return str(status if status is not None else "").strip() == STATUS_OK
