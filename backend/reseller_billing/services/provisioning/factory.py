from __future__ import annotations

from typing import Any

from reseller_billing.core.config import settings
from reseller_billing.services.provisioning.base import PanelClient
from reseller_billing.services.provisioning.eylandoo import EylandooClient
from reseller_billing.services.provisioning.marzban import MarzbanClient
from reseller_billing.services.provisioning.marzneshin import MarzneshinClient
from reseller_billing.services.provisioning.xui import XUIClient

PANEL_CLIENTS: dict[str, type] = {
    "marzban": MarzbanClient,
    "marzneshin": MarzneshinClient,
    "xui": XUIClient,
    "eylandoo": EylandooClient,
}


def _panel_type_key(panel_type) -> str:
    return str(getattr(panel_type, "value", panel_type) or "").strip().lower()


def get_client_class(panel_type) -> type | None:
    return PANEL_CLIENTS.get(_panel_type_key(panel_type))


def build_client(panel_type, base_url: str, credentials: dict[str, Any]) -> PanelClient:
    cls = get_client_class(panel_type)
    if cls is None:
        raise ValueError(f"Unsupported panel type: {_panel_type_key(panel_type)}")
    creds = credentials or {}
    verify_ssl = bool(creds.get("verify_ssl", settings.PANEL_TLS_VERIFY))
    timeout = float(creds.get("timeout", settings.HTTP_TIMEOUT_SECONDS))
    return cls(base_url, creds, verify_ssl=verify_ssl, timeout=timeout)
