from __future__ import annotations


class BillingError(Exception):
    """Base class for billing domain errors."""


class NotFoundError(BillingError):
    pass


class BillingValidationError(BillingError):
    """Rejected before any side effect happened."""


class InvalidTransition(BillingError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal reseller status transition {current} -> {target}")
        self.current = current
        self.target = target


class LedgerImmutableError(BillingError):
    pass
