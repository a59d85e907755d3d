# billing/validators.py
"""
Request body validation for billing endpoints.

Bodies are validated here rather than by FastAPI so that bad input maps
to a ValidationError (400 with a message) like every other billing error.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from billing.errors import ValidationError


class CheckoutSessionInput(BaseModel):
    """Body of POST /billing/checkout-session."""

    model_config = ConfigDict(extra="ignore")

    price_id: str = Field(validation_alias=AliasChoices("price_id", "priceId"))

    @field_validator("price_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("price_id must be a non-empty string")
        return value


class PortalSessionInput(BaseModel):
    """Body of POST /billing/portal-session."""

    model_config = ConfigDict(extra="ignore")

    return_url: str = Field(validation_alias=AliasChoices("return_url", "returnUrl"))

    @field_validator("return_url")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("return_url must be a non-empty string")
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("return_url must be a valid URL")
        return value


def _first_error(e: PydanticValidationError, field: str) -> str:
    for error in e.errors():
        if error.get("type") == "missing":
            return f"{field} is required"
        message = str(error.get("msg", ""))
        # pydantic prefixes custom messages with "Value error, "
        return message.removeprefix("Value error, ") or f"{field} is invalid"
    return f"{field} is invalid"


def parse_checkout_input(payload: Any) -> CheckoutSessionInput:
    """
    Validate a checkout request body.

    Raises:
        ValidationError: If the body isn't an object or price_id is bad
    """
    if not isinstance(payload, dict):
        raise ValidationError("Body must be a JSON object")
    try:
        return CheckoutSessionInput.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e, "price_id"))


def parse_portal_input(payload: Any) -> PortalSessionInput:
    """
    Validate a portal request body.

    Raises:
        ValidationError: If the body isn't an object or return_url is bad
    """
    if not isinstance(payload, dict):
        raise ValidationError("Body must be a JSON object")
    try:
        return PortalSessionInput.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e, "return_url"))
