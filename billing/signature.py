# billing/signature.py
"""
Stripe webhook signature verification.

Header format:
    Stripe-Signature: t=<unix-seconds>,v1=<hex>[,v1=<hex>...]

Matching and the replay window for old timestamps are delegated to the
stripe SDK (stripe.WebhookSignature.verify_header), which signs the exact
raw bytes and compares every v1 candidate in constant time. This module
adds what the SDK leaves open:
- A header must carry exactly one t value
- Timestamps too far in the future are rejected as well as old ones
- Fails closed: any problem means "not verified", never an exception
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import stripe

logger = logging.getLogger(__name__)

# Maximum age (either direction) of a signed timestamp
SIGNATURE_TOLERANCE_SECONDS = 300


def _normalize_header(header: str) -> str:
    return ",".join(part.strip() for part in header.split(","))


def _signed_timestamp(header: str) -> Optional[int]:
    """The single t value of a normalized header, or None."""
    timestamps = [part[2:] for part in header.split(",") if part.startswith("t=")]
    if len(timestamps) != 1:
        return None
    try:
        return int(timestamps[0])
    except ValueError:
        return None


def verify_signature(
    raw_body: bytes,
    signature_header: str,
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
) -> bool:
    """
    Check that a webhook body was signed by the provider recently.

    Accepts if any v1 value matches, which covers secret rotation
    windows where the provider signs with more than one secret.

    Returns:
        True if verified, False otherwise (never raises)
    """
    if not secret or not signature_header or not signature_header.isascii():
        return False

    header = _normalize_header(signature_header)
    timestamp = _signed_timestamp(header)
    if timestamp is None:
        return False

    if timestamp > time.time() + tolerance:
        logger.warning("Webhook signature timestamp is in the future")
        return False

    try:
        payload = raw_body.decode("utf-8")
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False

    return True
