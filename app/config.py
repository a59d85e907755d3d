"""
Centralized configuration management with startup validation.

Defines REQUIRED vs OPTIONAL environment variables and provides
safe configuration loading with validation and logging.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Optional

from billing.products import TIER_PREMIUM, TIER_PRO, parse_price_tiers

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

SERVICE_NAME = "billing-sync"
SERVICE_VERSION = "0.1.0"

DEFAULT_MAX_REQUEST_SIZE_BYTES = 1_048_576  # 1MB
MIN_REQUEST_SIZE_BYTES = 1024  # 1KB minimum

DEFAULT_STRIPE_TIMEOUT_SECONDS = 10
DEFAULT_JWKS_TTL_SECONDS = 600
DEFAULT_AUTH_AUDIENCE = "authenticated"
DEFAULT_DB_PATH = "data/billing.db"

STORAGE_BACKENDS = ("sqlite", "memory")

REQUIRED_VARS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_SUCCESS_URL",
    "STRIPE_CANCEL_URL",
    "AUTH_JWKS_URL",
    "AUTH_ISSUER",
)

# Sensitive substrings that should never appear in logs
SENSITIVE_SUBSTRINGS = ("key", "token", "secret", "password", "credential")


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""

    pass


# =============================================================================
# Configuration Dataclass
# =============================================================================


@dataclass
class AppConfig:
    """Application configuration loaded from environment."""

    # Stripe (REQUIRED)
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_success_url: str
    stripe_cancel_url: str
    price_tiers: dict

    # Auth (REQUIRED except audience/ttl)
    auth_jwks_url: str
    auth_issuer: str
    auth_audience: str = DEFAULT_AUTH_AUDIENCE
    auth_jwks_ttl_seconds: int = DEFAULT_JWKS_TTL_SECONDS

    # Service info
    service_name: str = SERVICE_NAME
    service_version: str = SERVICE_VERSION
    environment: str = "development"

    # Provider calls
    stripe_timeout_seconds: int = DEFAULT_STRIPE_TIMEOUT_SECONDS

    # Storage
    storage_backend: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH

    # Security settings
    max_request_size_bytes: int = DEFAULT_MAX_REQUEST_SIZE_BYTES

    # Warnings collected during config load
    warnings: list = field(default_factory=list)

    @property
    def stripe_test_mode(self) -> bool:
        return self.stripe_secret_key.startswith("sk_test_")


# =============================================================================
# Configuration Loading
# =============================================================================


def _parse_int_env(
    name: str, default: int, min_value: Optional[int] = None
) -> tuple[int, Optional[str]]:
    """
    Parse an integer environment variable with validation.

    Returns (value, warning_message).
    On invalid input, returns default with a warning.
    """
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default, None

    try:
        value = int(raw)
    except ValueError:
        warning = f"{name}='{raw}' is not a valid integer; using default {default}"
        return default, warning

    if min_value is not None and value < min_value:
        warning = f"{name}={value} is below minimum {min_value}; using default {default}"
        return default, warning

    return value, None


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _load_price_tiers(errors: list) -> dict:
    """Build the price -> tier table from STRIPE_PRICE_* and BILLING_PRICE_TIERS."""
    tiers = {}

    pro_price = _env("STRIPE_PRICE_PRO")
    if pro_price:
        tiers[pro_price] = TIER_PRO

    premium_price = _env("STRIPE_PRICE_PREMIUM")
    if premium_price:
        tiers[premium_price] = TIER_PREMIUM

    extra = _env("BILLING_PRICE_TIERS")
    if extra:
        try:
            tiers.update(parse_price_tiers(extra))
        except ValueError as e:
            errors.append(f"BILLING_PRICE_TIERS: {e}")

    if not tiers:
        errors.append(
            "No prices configured: set STRIPE_PRICE_PRO, STRIPE_PRICE_PREMIUM "
            "or BILLING_PRICE_TIERS"
        )

    return tiers


def load_config(fail_fast: bool = True) -> AppConfig:
    """
    Load and validate application configuration from environment.

    Args:
        fail_fast: If True, raise ConfigurationError on critical issues.
                   If False, log errors as warnings and continue.

    Returns:
        AppConfig instance with validated configuration.

    Raises:
        ConfigurationError: If required configuration is missing/invalid
                           and fail_fast is True.
    """
    warnings = []
    errors = []

    missing = [name for name in REQUIRED_VARS if not _env(name)]
    if missing:
        errors.append(f"Missing required environment variables: {', '.join(missing)}")

    price_tiers = _load_price_tiers(errors)

    storage_backend = _env("BILLING_STORAGE", "sqlite").lower()
    if storage_backend not in STORAGE_BACKENDS:
        errors.append(
            f"BILLING_STORAGE='{storage_backend}' must be one of {', '.join(STORAGE_BACKENDS)}"
        )

    stripe_timeout, timeout_warning = _parse_int_env(
        "STRIPE_TIMEOUT_SECONDS", DEFAULT_STRIPE_TIMEOUT_SECONDS, min_value=1
    )
    if timeout_warning:
        warnings.append(timeout_warning)

    jwks_ttl, ttl_warning = _parse_int_env(
        "AUTH_JWKS_TTL_SECONDS", DEFAULT_JWKS_TTL_SECONDS, min_value=0
    )
    if ttl_warning:
        warnings.append(ttl_warning)

    max_request_size, size_warning = _parse_int_env(
        "MAX_REQUEST_SIZE_BYTES",
        DEFAULT_MAX_REQUEST_SIZE_BYTES,
        min_value=MIN_REQUEST_SIZE_BYTES,
    )
    if size_warning:
        warnings.append(size_warning)

    if errors:
        if fail_fast:
            raise ConfigurationError("; ".join(errors))
        warnings.extend(errors)

    # Log warnings
    for warning in warnings:
        logger.warning(f"[CONFIG] {warning}")

    return AppConfig(
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        stripe_success_url=_env("STRIPE_SUCCESS_URL"),
        stripe_cancel_url=_env("STRIPE_CANCEL_URL"),
        price_tiers=price_tiers,
        auth_jwks_url=_env("AUTH_JWKS_URL"),
        auth_issuer=_env("AUTH_ISSUER"),
        auth_audience=_env("AUTH_AUDIENCE", DEFAULT_AUTH_AUDIENCE) or DEFAULT_AUTH_AUDIENCE,
        auth_jwks_ttl_seconds=jwks_ttl,
        environment=_env("ENVIRONMENT", "development") or "development",
        stripe_timeout_seconds=stripe_timeout,
        storage_backend=storage_backend,
        db_path=_env("BILLING_DB_PATH", DEFAULT_DB_PATH) or DEFAULT_DB_PATH,
        max_request_size_bytes=max_request_size,
        warnings=warnings,
    )


def log_config_snapshot(config: AppConfig) -> str:
    """
    Generate and log a safe configuration snapshot.

    Returns the snapshot string for testing purposes.
    Never logs actual secret values - only boolean presence flags.
    """
    snapshot = (
        f"[STARTUP] service={config.service_name} "
        f"version={config.service_version} "
        f"environment={config.environment} "
        f"storage={config.storage_backend} "
        f"stripe_test_mode={config.stripe_test_mode} "
        f"stripe_secret_key_present={bool(config.stripe_secret_key)} "
        f"webhook_secret_present={bool(config.stripe_webhook_secret)} "
        f"configured_prices={len(config.price_tiers)} "
        f"stripe_timeout_seconds={config.stripe_timeout_seconds} "
        f"max_request_size_bytes={config.max_request_size_bytes}"
    )
    logger.info(snapshot)
    return snapshot


def validate_config_snapshot_safety(snapshot: str) -> bool:
    """
    Validate that a config snapshot doesn't contain sensitive values.

    Returns True if safe, False if potentially unsafe.
    """
    snapshot_lower = snapshot.lower()

    # Allow "<name>_present=true" but not "<name>=<value>"
    for sensitive in SENSITIVE_SUBSTRINGS:
        pattern = rf"{sensitive}=(?!true|false)"
        if re.search(pattern, snapshot_lower):
            return False

    return True
