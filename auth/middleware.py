# auth/middleware.py
"""
FastAPI authentication dependencies.

Provides:
- Bearer token extraction
- User identity injection for billing routes
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import HTTPException, Request

from auth.models import AuthenticatedUser
from auth.tokens import TokenError, TokenVerifier

_logger = logging.getLogger(__name__)


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract the token from an "Authorization: Bearer ..." header."""
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_token_verifier(request: Request) -> TokenVerifier:
    verifier = getattr(request.app.state, "token_verifier", None)
    if verifier is None:
        raise RuntimeError("Token verifier not configured on app.state")
    return verifier


def get_current_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency: the authenticated user (required).

    Raises 401 if the token is missing or invalid.
    """
    token = get_bearer_token(request)
    if token is None:
        _logger.info("Missing or invalid Authorization header")
        raise HTTPException(status_code=401, detail="Authorization token required")

    try:
        return get_token_verifier(request).verify(token)
    except TokenError as e:
        _logger.warning(f"Token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")
