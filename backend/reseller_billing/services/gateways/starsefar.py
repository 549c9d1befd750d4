from __future__ import annotations

from typing import Any

import httpx

from reseller_billing.core.config import settings
from reseller_billing.services.gateways.base import PaymentGatewayError

GATEWAY_NAME = "starsefar"
PAID_STATUSES = ("completed", "paid")


class StarsefarClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.STARSEFAR_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.STARSEFAR_API_KEY
        self.timeout = float(timeout or settings.HTTP_TIMEOUT_SECONDS)
        self._transport = transport

    async def check_order(self, order_id: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                r = await client.get(
                    f"{self.base_url}/api/check-order/{order_id}",
                    headers={"Accept": "application/json", "Authorization": f"Bearer {self.api_key}"},
                )
            except httpx.HTTPError as e:
                raise PaymentGatewayError(f"starsefar check_order {order_id}: {e}") from e
        if r.status_code >= 400:
            raise PaymentGatewayError(f"HTTP {r.status_code} GET /api/check-order/{order_id}: {r.text[:300]}")
        js = r.json()
        return js if isinstance(js, dict) else {}


def is_paid_status(status: Any) -> bool:
    return str(status or "").strip().lower() in PAID_STATUSES


def order_is_paid(check_response: dict[str, Any]) -> bool:
    data = check_response.get("data") if isinstance(check_response.get("data"), dict) else {}
    return bool(check_response.get("success")) and bool(data.get("paid"))
