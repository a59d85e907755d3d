# billing/errors.py
"""
Billing error taxonomy.

Every error carries the HTTP status the API layer maps it to, so routers
never need their own isinstance ladders.
"""

from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base billing error."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Malformed client input (e.g. missing price_id) or webhook body."""

    status_code = 400


class AuthenticationError(BillingError):
    """Webhook signature missing, invalid, or stale."""

    status_code = 400


class ProviderError(BillingError):
    """Non-2xx or malformed response from the billing provider."""

    status_code = 502

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.http_status = http_status
        self.body = body


class ConflictError(BillingError):
    """Duplicate insert (ledger event id or customer link)."""

    status_code = 409


class NotFoundError(BillingError):
    """A required record does not exist."""

    status_code = 404


class CustomerNotFoundError(NotFoundError, ProviderError):
    """
    No customer link exists for a user.

    Raised when creating a portal session for a user who never checked out.
    Reported as an upstream failure, matching the provider error contract.
    """

    status_code = 502

    def __init__(self, message: str = "Customer not found"):
        ProviderError.__init__(self, message)
