from __future__ import annotations


class PaymentGatewayError(Exception):
    """Network or protocol failure talking to a payment gateway."""
