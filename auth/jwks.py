# auth/jwks.py
"""
JWKS key cache.

Holds the identity provider's signing keys for a bounded time. A token
signed with an unknown key ID forces one refresh, which picks up key
rotation without waiting for the TTL. Forced refreshes are rate limited, so
tokens carrying made-up key IDs can't turn every request into a fetch.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import httpx

_logger = logging.getLogger(__name__)

DEFAULT_JWKS_TTL_SECONDS = 600
DEFAULT_FETCH_TIMEOUT_SECONDS = 5.0
# Minimum gap between a fetch and a forced refresh
DEFAULT_MIN_REFRESH_SECONDS = 30


class JWKSError(Exception):
    """Signing keys could not be fetched or no key matched."""
    pass


class JWKSCache:
    """
    Process-scoped cache of a JWKS document.

    Thread-safe. Owned by the token verifier and shared through app state,
    not a module global.
    """

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: int = DEFAULT_JWKS_TTL_SECONDS,
        timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        min_refresh_seconds: float = DEFAULT_MIN_REFRESH_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._jwks_url = jwks_url
        self._ttl = ttl_seconds
        self._timeout = timeout
        self._min_refresh = min_refresh_seconds
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: list[dict] = []
        self._fetched_at: Optional[float] = None

    def get_key(self, kid: Optional[str]) -> dict:
        """
        Return the JWK with this key ID.

        Raises:
            JWKSError: If keys can't be fetched, or none matches after a
                refresh (or within the refresh cooldown)
        """
        key = _find_key(self._get_keys(force=False), kid)
        if key is not None:
            return key

        key = _find_key(self._get_keys(force=True), kid)
        if key is None:
            raise JWKSError("Matching JWK not found")
        return key

    def invalidate(self) -> None:
        with self._lock:
            self._keys = []
            self._fetched_at = None

    def _is_fresh(self) -> bool:
        return (
            self._fetched_at is not None
            and self._clock() - self._fetched_at < self._ttl
        )

    def _in_cooldown(self) -> bool:
        return (
            self._fetched_at is not None
            and self._clock() - self._fetched_at < self._min_refresh
        )

    def _get_keys(self, force: bool) -> list[dict]:
        with self._lock:
            if not force and self._is_fresh():
                return self._keys
            if force and self._in_cooldown():
                _logger.debug("Skipping forced JWKS refresh inside cooldown")
                return self._keys

            keys = self._fetch()
            self._keys = keys
            self._fetched_at = self._clock()
            return keys

    def _fetch(self) -> list[dict]:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(self._jwks_url, headers={"Accept": "application/json"})
        except httpx.TimeoutException as e:
            _logger.warning("JWKS request timed out")
            raise JWKSError("JWKS request timed out") from e
        except httpx.RequestError as e:
            _logger.warning(f"JWKS request failed: {e}")
            raise JWKSError("Failed to fetch JWKS") from e

        if response.status_code != 200:
            _logger.warning(f"JWKS endpoint returned {response.status_code}")
            raise JWKSError("Failed to fetch JWKS")

        try:
            data = response.json()
        except ValueError as e:
            raise JWKSError("JWKS payload is not JSON") from e

        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, list) or not keys:
            raise JWKSError("JWKS payload missing keys")

        _logger.info(f"Fetched {len(keys)} signing key(s) from JWKS")
        return [k for k in keys if isinstance(k, dict)]


def _find_key(keys: list[dict], kid: Optional[str]) -> Optional[dict]:
    for key in keys:
        if key.get("kid") == kid:
            return key
    return None
