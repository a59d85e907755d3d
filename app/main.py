"""Billing sync API - FastAPI application entrypoint."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import AppConfig, load_config, log_config_snapshot
from app.routers import billing as billing_router
from auth.jwks import JWKSCache
from auth.tokens import TokenVerifier
from billing.errors import BillingError
from billing.products import TierResolver
from billing.service import BillingService, CheckoutUrls
from billing.storage import BillingStore, InMemoryBillingStore
from billing.stripe_client import StripeGateway, configure_stripe

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests exceeding size limit to prevent payload bombs."""

    def __init__(self, app, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                too_large = int(content_length) > self.max_bytes
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={"message": "Invalid Content-Length header"},
                )
            if too_large:
                return JSONResponse(
                    status_code=413,
                    content={"message": "Request entity too large"},
                )
        return await call_next(request)


def build_store(config: AppConfig) -> BillingStore:
    """Storage backend selected by BILLING_STORAGE."""
    if config.storage_backend == "memory":
        logger.warning("Using in-memory billing storage; state is lost on restart")
        return InMemoryBillingStore()

    from persistence import SQLiteBillingStore, configure

    configure(config.db_path)
    return SQLiteBillingStore()


def build_billing_service(config: AppConfig, store: Optional[BillingStore] = None) -> BillingService:
    configure_stripe(timeout=config.stripe_timeout_seconds)
    return BillingService(
        store=store if store is not None else build_store(config),
        provider=StripeGateway(config.stripe_secret_key, timeout=config.stripe_timeout_seconds),
        tiers=TierResolver(config.price_tiers),
        webhook_secret=config.stripe_webhook_secret,
        checkout_urls=CheckoutUrls(
            success_url=config.stripe_success_url,
            cancel_url=config.stripe_cancel_url,
        ),
    )


def build_token_verifier(config: AppConfig) -> TokenVerifier:
    jwks = JWKSCache(config.auth_jwks_url, ttl_seconds=config.auth_jwks_ttl_seconds)
    return TokenVerifier(jwks, issuer=config.auth_issuer, audience=config.auth_audience)


def create_app(
    config: Optional[AppConfig] = None,
    billing_service: Optional[BillingService] = None,
    token_verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators are created from config unless passed in, so tests can
    inject a service wired to a fake provider.
    """
    if config is None:
        config = load_config()
    log_config_snapshot(config)

    app = FastAPI(
        title="Billing Sync",
        description="Stripe subscription state synchronization",
        version=config.service_version,
    )

    app.state.config = config
    app.state.started_at = datetime.now(timezone.utc)
    app.state.billing_service = billing_service or build_billing_service(config)
    app.state.token_verifier = token_verifier or build_token_verifier(config)

    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=config.max_request_size_bytes)

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    app.include_router(billing_router.router)

    @app.get("/health")
    async def health():
        """Liveness with a non-secret config summary."""
        return {
            "status": "healthy",
            "service": config.service_name,
            "version": config.service_version,
            "environment": config.environment,
            "storage": config.storage_backend,
            "stripe_test_mode": config.stripe_test_mode,
            "configured_prices": len(app.state.billing_service.tiers),
            "tiers": sorted(set(app.state.billing_service.tiers.tiers().values())),
            "started_at": app.state.started_at.isoformat(),
        }

    return app


app = create_app()
