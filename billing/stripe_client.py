# billing/stripe_client.py
"""
Stripe gateway: the only module that talks to the Stripe API.

- Every call passes the API key explicitly (no global key)
- Each call is bounded by a timeout; the SDK's own retries are disabled
- Stripe failures surface as ProviderError with status and body
- Subscription payloads are validated before anything reads them
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import stripe
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from billing.errors import ProviderError

_logger = logging.getLogger(__name__)

# Pinned so payload shapes don't change under us
STRIPE_API_VERSION = "2023-10-16"

DEFAULT_TIMEOUT_SECONDS = 10.0


# =============================================================================
# Payload models (trust boundary)
# =============================================================================


class _Loose(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StripePrice(_Loose):
    id: Optional[str] = None


class StripeSubscriptionItem(_Loose):
    price: Optional[StripePrice] = None
    # Newer API versions report the billing period per item
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class StripeItemList(_Loose):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeCard(_Loose):
    brand: Optional[str] = None
    last4: Optional[str] = None


class StripePaymentMethod(_Loose):
    card: Optional[StripeCard] = None


class ProviderSubscription(_Loose):
    """A Stripe subscription, reduced to the fields reconciliation reads."""

    id: str
    status: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None
    start_date: Optional[int] = None
    items: StripeItemList = Field(default_factory=StripeItemList)
    default_payment_method: Optional[StripePaymentMethod] = None

    @field_validator("default_payment_method", mode="before")
    @classmethod
    def _drop_unexpanded(cls, value: Any) -> Any:
        # An unexpanded payment method is just its ID string
        if isinstance(value, str):
            return None
        return value

    @property
    def first_item(self) -> Optional[StripeSubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.first_item
        if item is None or item.price is None:
            return None
        return item.price.id

    @property
    def period_start(self) -> Optional[datetime]:
        value = self.current_period_start
        if value is None and self.first_item is not None:
            value = self.first_item.current_period_start
        return from_epoch(value)

    @property
    def period_end(self) -> Optional[datetime]:
        value = self.current_period_end
        if value is None and self.first_item is not None:
            value = self.first_item.current_period_end
        return from_epoch(value)

    @property
    def started_at(self) -> Optional[datetime]:
        return from_epoch(self.start_date) or self.period_start

    @property
    def card(self) -> Optional[StripeCard]:
        if self.default_payment_method is None:
            return None
        return self.default_payment_method.card


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch seconds to an aware UTC datetime (0/None -> None)."""
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def parse_subscription(payload: Mapping[str, Any]) -> ProviderSubscription:
    """
    Validate a raw subscription object.

    Raises:
        ProviderError: If required fields are missing or mistyped
    """
    try:
        return ProviderSubscription.model_validate(payload)
    except PydanticValidationError as e:
        raise ProviderError(f"Malformed subscription from Stripe: {e.error_count()} invalid field(s)")


# =============================================================================
# Provider interface
# =============================================================================


class BillingProvider(ABC):
    """Operations the billing core needs from the payment provider."""

    @abstractmethod
    def find_customer_by_user(self, user_id: str) -> Optional[str]:
        """Customer ID tagged with this user ID, if one exists."""
        ...

    @abstractmethod
    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create a customer tagged with the user ID. Returns its ID."""
        ...

    @abstractmethod
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> Optional[str]:
        """Create a subscription-mode checkout session. Returns its URL."""
        ...

    @abstractmethod
    def create_portal_session(self, customer_id: str, return_url: str) -> Optional[str]:
        """Create a customer portal session. Returns its URL."""
        ...

    @abstractmethod
    def list_subscriptions(self, customer_id: str, limit: int = 1) -> list[ProviderSubscription]:
        """Most recent subscriptions of any status, payment method expanded."""
        ...


# =============================================================================
# Stripe implementation
# =============================================================================


def configure_stripe(timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
    """Apply process-wide SDK settings: API version, timeout, no retries."""
    stripe.api_version = STRIPE_API_VERSION
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.new_default_http_client(timeout=timeout)


def _escape_search_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class StripeGateway(BillingProvider):
    """
    BillingProvider backed by the stripe SDK.

    Args:
        api_key: Stripe secret key, passed on every request
        timeout: Per-request timeout in seconds
    """

    def __init__(self, api_key: str, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self._api_key = api_key
        configure_stripe(timeout)

    @property
    def is_test_mode(self) -> bool:
        return self._api_key.startswith("sk_test_")

    def _call(self, operation: str, method, **params):
        try:
            return method(api_key=self._api_key, **params)
        except stripe.StripeError as e:
            status = getattr(e, "http_status", None)
            _logger.error(
                f"Stripe {operation} failed ({status}): {e.user_message or e}",
                extra={"operation": operation, "http_status": status},
            )
            raise ProviderError(
                f"Stripe {operation} failed ({status})",
                http_status=status,
                body=getattr(e, "http_body", None),
            ) from e

    def find_customer_by_user(self, user_id: str) -> Optional[str]:
        result = self._call(
            "customer search",
            stripe.Customer.search,
            query=f"metadata['user_id']:'{_escape_search_value(user_id)}'",
            limit=1,
        )
        data = _get(result, "data") or []
        if not data:
            return None
        return _require_id(data[0], "customer search")

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = self._call("customer create", stripe.Customer.create, **params)
        return _require_id(customer, "customer create")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> Optional[str]:
        params: dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [{"price": price_id, "quantity": 1}],
        }
        if metadata:
            params["metadata"] = metadata
            params["subscription_data"] = {"metadata": metadata}
        session = self._call("checkout session create", stripe.checkout.Session.create, **params)
        return _get(session, "url")

    def create_portal_session(self, customer_id: str, return_url: str) -> Optional[str]:
        session = self._call(
            "portal session create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return _get(session, "url")

    def list_subscriptions(self, customer_id: str, limit: int = 1) -> list[ProviderSubscription]:
        result = self._call(
            "subscription list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=limit,
            expand=["data.default_payment_method"],
        )
        data = _get(result, "data")
        if data is None:
            return []
        if not isinstance(data, list):
            raise ProviderError("Malformed subscription list from Stripe")
        return [parse_subscription(item) for item in data]


def _get(obj: Any, key: str) -> Any:
    # StripeObject is a dict subclass; anything else is a bad response
    if not isinstance(obj, Mapping):
        raise ProviderError("Unexpected response shape from Stripe")
    return obj.get(key)


def _require_id(obj: Any, operation: str) -> str:
    object_id = _get(obj, "id")
    if not isinstance(object_id, str) or not object_id:
        raise ProviderError(f"Stripe {operation} returned no ID")
    return object_id
