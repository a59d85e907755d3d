# billing/webhooks.py
"""
Stripe webhook event parsing.

Only called on bodies whose signature has already been verified.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from billing.errors import ValidationError


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """A Stripe event envelope."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: WebhookEventData = Field(default_factory=WebhookEventData)

    @property
    def customer_id(self) -> Optional[str]:
        """
        Stripe customer this event is about, if any.

        Most objects carry a "customer" field (an ID, or an object when
        expanded). customer.* events carry the customer itself.
        """
        obj = self.data.object
        customer = obj.get("customer")
        if isinstance(customer, str) and customer:
            return customer
        if isinstance(customer, dict):
            expanded_id = customer.get("id")
            if isinstance(expanded_id, str) and expanded_id:
                return expanded_id
        if obj.get("object") == "customer":
            object_id = obj.get("id")
            if isinstance(object_id, str) and object_id:
                return object_id
        return None


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of handling one webhook delivery."""
    event_id: str
    event_type: str
    duplicate: bool = False
    reconciled: bool = False
    customer_id: Optional[str] = None


def parse_event(raw_body: bytes) -> tuple[WebhookEvent, dict[str, Any]]:
    """
    Parse a verified webhook body.

    Returns:
        (event, raw payload dict)

    Raises:
        ValidationError: If the body isn't JSON or lacks id/type
    """
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Webhook body is not valid JSON")

    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    try:
        event = WebhookEvent.model_validate(payload)
    except PydanticValidationError:
        raise ValidationError("Webhook body is not a valid event")

    return event, payload
