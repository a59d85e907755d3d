"""
Billing API endpoints.

Interactive routes require a bearer token. The Stripe webhook route is
public and authenticated by its signature instead.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from auth.middleware import get_current_user
from auth.models import AuthenticatedUser
from billing.errors import AuthenticationError, ProviderError, ValidationError
from billing.service import BillingService
from billing.validators import parse_checkout_input, parse_portal_input

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

PROVIDER_UNAVAILABLE = "Could not reach payment provider"

SIGNATURE_HEADERS = ("stripe-signature", "signature")


def get_billing_service(request: Request) -> BillingService:
    return request.app.state.billing_service


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError("Body must be valid JSON")


def _provider_unavailable() -> JSONResponse:
    return JSONResponse(status_code=502, content={"message": PROVIDER_UNAVAILABLE})


# =============================================================================
# Checkout / portal
# =============================================================================


@router.post("/checkout-session")
async def create_checkout_session(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Start a Stripe Checkout session for the given price."""
    body = parse_checkout_input(await _json_body(request))

    try:
        url = await run_in_threadpool(
            service.create_checkout_session, user.id, user.email, body.price_id
        )
    except ProviderError as e:
        _logger.error(
            f"Checkout session failed for user {user.id}: {e.message}",
            extra={"provider_status": e.http_status},
        )
        return _provider_unavailable()

    return {"url": url}


@router.post("/portal-session")
async def create_portal_session(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Open the Stripe Customer Portal for the current user."""
    body = parse_portal_input(await _json_body(request))

    try:
        url = await run_in_threadpool(service.create_portal_session, user.id, body.return_url)
    except ProviderError as e:
        _logger.error(
            f"Portal session failed for user {user.id}: {e.message}",
            extra={"provider_status": e.http_status},
        )
        return _provider_unavailable()

    return {"url": url}


# =============================================================================
# Webhooks
# =============================================================================


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    service: BillingService = Depends(get_billing_service),
):
    """
    Receive a Stripe event.

    The raw body is verified exactly as received. Replays of an already
    processed event return 200 so Stripe stops retrying.
    """
    payload = await request.body()
    signature = next(
        (request.headers[h] for h in SIGNATURE_HEADERS if request.headers.get(h)),
        None,
    )

    if not signature:
        _logger.warning("Webhook received without signature")
        return JSONResponse(status_code=400, content={"message": "Missing signature"})

    try:
        result = await run_in_threadpool(service.handle_webhook, payload, signature)
    except AuthenticationError as e:
        _logger.error(f"Webhook signature verification failed: {e.message}")
        return JSONResponse(status_code=400, content={"message": "Invalid signature"})
    except ValidationError as e:
        _logger.warning(f"Webhook payload rejected: {e.message}")
        return JSONResponse(status_code=400, content={"message": e.message})
    except Exception as e:
        _logger.exception(f"Webhook processing failed: {e}")
        return JSONResponse(status_code=502, content={"message": "Webhook processing failed"})

    _logger.info(
        f"Webhook {result.event_type} handled",
        extra={
            "event_id": result.event_id,
            "customer_id": result.customer_id,
            "duplicate": result.duplicate,
            "reconciled": result.reconciled,
        },
    )
    return {"received": True}


# =============================================================================
# Subscription state
# =============================================================================


@router.get("/sync")
async def sync_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Reconcile the user's subscription with Stripe now."""
    try:
        snapshot = await run_in_threadpool(service.sync_for_user, user.id, user.email)
    except ProviderError as e:
        _logger.error(
            f"Subscription sync failed for user {user.id}: {e.message}",
            extra={"provider_status": e.http_status},
        )
        return _provider_unavailable()

    return {"subscription": snapshot.to_dict()}


@router.get("/subscription")
def get_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Cached subscription state. Never calls Stripe."""
    snapshot = service.get_subscription(user.id)
    return {"subscription": snapshot.to_dict() if snapshot else None}


@router.get("/entitlement")
def get_entitlement(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Whether the user currently has a paid tier."""
    return service.get_entitlement(user.id).to_dict()


@router.get("/history")
def get_history(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """The user's subscription interval trail, oldest first. Never calls Stripe."""
    link, intervals = service.get_history(user.id)
    return {
        "customer": link.to_dict() if link else None,
        "intervals": [interval.to_dict() for interval in intervals],
    }
