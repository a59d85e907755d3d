# auth/tokens.py
"""
Access token verification.

Tokens are RS256 JWTs issued by the identity provider and verified
against its published JWKS.
"""

from __future__ import annotations

import logging

from jose import JWTError, jwt

from auth.jwks import JWKSCache, JWKSError
from auth.models import AuthenticatedUser

_logger = logging.getLogger(__name__)

ALGORITHM = "RS256"


class TokenError(Exception):
    """Token is malformed, unsigned, expired, or for another audience."""
    pass


class TokenVerifier:
    """
    Verifies bearer tokens and extracts the user identity.

    Args:
        jwks: Key cache for the issuer
        issuer: Expected "iss" claim
        audience: Expected "aud" claim
    """

    def __init__(self, jwks: JWKSCache, issuer: str, audience: str):
        self._jwks = jwks
        self._issuer = issuer
        self._audience = audience

    def verify(self, token: str) -> AuthenticatedUser:
        """
        Verify a token and return its user.

        Raises:
            TokenError: If the token can't be trusted
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise TokenError("Invalid token format") from e

        if header.get("alg") != ALGORITHM:
            raise TokenError("Unsupported token algorithm")

        try:
            key = self._jwks.get_key(header.get("kid"))
        except JWKSError as e:
            raise TokenError(str(e)) from e

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"require_sub": True, "require_iss": True},
            )
        except JWTError as e:
            raise TokenError(str(e) or "Invalid token") from e

        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise TokenError("Token missing required claims")

        metadata = claims.get("user_metadata") or {}
        name = None
        if isinstance(metadata, dict):
            name = metadata.get("full_name") or metadata.get("name")

        email = claims.get("email")
        return AuthenticatedUser(
            id=user_id,
            email=email if isinstance(email, str) and email else None,
            name=name,
        )
