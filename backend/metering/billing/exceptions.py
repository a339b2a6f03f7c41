"""Billing exception hierarchy.

Every error carries the HTTP status the global error handler responds with.
"""

from typing import Any


class BillingError(Exception):
    """Base exception for metering and ledger errors."""

    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message

    def payload(self) -> dict[str, Any]:
        return {"detail": self.message}


class LedgerValidationError(BillingError):
    """Missing identifiers when creating or addressing a ledger entry."""


class LedgerPersistenceError(BillingError):
    """A ledger write failed after its entry was resolved."""


class LedgerEntryNotFoundError(BillingError):
    status_code = 404

    def __init__(self, entry_id: Any):
        super().__init__(f"Ledger entry not found: {entry_id}", {"entry_id": str(entry_id)})
        self.entry_id = entry_id


class AggregateMissingError(BillingError):
    """No usage aggregate exists for a period that needs allocation."""

    status_code = 503

    def __init__(self, period: str):
        super().__init__(f"Usage aggregate missing for period {period}", {"period": period})
        self.period = period


class SubscriptionNotFoundError(BillingError):
    status_code = 404

    def __init__(self, organization_id: str):
        super().__init__(
            "No subscription found for this organisation - please contact support",
            {"organization_id": organization_id},
        )
        self.organization_id = organization_id


class OwnerOnlyError(BillingError):
    status_code = 403

    def __init__(self, action: str):
        super().__init__(f"Unauthorised action: only the platform owner can {action}")


class GateDeniedError(BillingError):
    """A gated request was refused; carries the gate state for the client."""

    def __init__(self, message: str, state: str, status_code: int):
        super().__init__(message, {"state": state})
        self.state = state
        self.status_code = status_code

    def payload(self) -> dict[str, Any]:
        return {"detail": self.message, "state": self.state}
