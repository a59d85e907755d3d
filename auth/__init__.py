# auth/__init__.py
"""
Authentication module.

Provides:
- RS256 access token verification against a JWKS endpoint
- JWKS key cache with TTL and refresh on unknown key ID
- FastAPI dependency for the current user
"""

from auth.models import AuthenticatedUser
from auth.jwks import JWKSCache, JWKSError
from auth.tokens import TokenVerifier, TokenError
from auth.middleware import get_current_user

__all__ = [
    "AuthenticatedUser",
    "JWKSCache",
    "JWKSError",
    "TokenVerifier",
    "TokenError",
    "get_current_user",
]
