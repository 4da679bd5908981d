"""Verification of the identity provider's session assertion (OIDC id_token).

The issuer's signing keys are held in one process-wide ``JwksCache``: fetched on
first use, refreshed once the entry is older than ``ttl_seconds``. Refreshes are
serialised by a lock so only one thread talks to the issuer at a time.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
import jwt

from datadrop.config import OIDC_CLIENT_ID, OIDC_ISSUER

logger = logging.getLogger("datadrop.identity")

JWKS_CACHE_TTL_SECONDS = 3600
SESSION_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256"]


class IdentityError(Exception):
    pass


@dataclass(frozen=True)
class _JwksEntry:
    keys: jwt.PyJWKSet
    fetched_at: float


def _fetch_jwks(url: str) -> dict[str, Any]:
    response = httpx.get(url, timeout=10.0)
    response.raise_for_status()
    return response.json()


class JwksCache:
    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: int = JWKS_CACHE_TTL_SECONDS,
        fetcher: Callable[[str], dict[str, Any]] = _fetch_jwks,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jwks_url = jwks_url
        self.ttl_seconds = ttl_seconds
        self._fetcher = fetcher
        self._clock = clock
        self._entry: Optional[_JwksEntry] = None
        self._lock = threading.Lock()

    def _is_fresh(self, entry: Optional[_JwksEntry]) -> bool:
        return entry is not None and self._clock() - entry.fetched_at < self.ttl_seconds

    def keys(self) -> jwt.PyJWKSet:
        entry = self._entry
        if self._is_fresh(entry):
            return entry.keys
        with self._lock:
            # Another thread may have refreshed while we waited
            entry = self._entry
            if self._is_fresh(entry):
                return entry.keys
            try:
                payload = self._fetcher(self.jwks_url)
                keys = jwt.PyJWKSet.from_dict(payload)
            except (httpx.HTTPError, jwt.PyJWTError, ValueError) as exc:
                logger.error("event=jwks_fetch_failed url=%s error=%s", self.jwks_url, exc)
                raise IdentityError("Unable to load issuer signing keys") from exc
            self._entry = _JwksEntry(keys=keys, fetched_at=self._clock())
            logger.info("event=jwks_refreshed url=%s keys=%s", self.jwks_url, len(keys.keys))
            return keys

    def signing_key(self, kid: Optional[str]) -> jwt.PyJWK:
        keys = self.keys()
        for key in keys.keys:
            if kid is None or key.key_id == kid:
                return key
        raise IdentityError(f"No signing key matches kid={kid}")


_jwks_cache: Optional[JwksCache] = None
_jwks_cache_lock = threading.Lock()


def get_jwks_cache() -> JwksCache:
    """Lazily create the process-wide key cache for the configured issuer."""
    global _jwks_cache
    if _jwks_cache is None:
        with _jwks_cache_lock:
            if _jwks_cache is None:
                _jwks_cache = JwksCache(f"{OIDC_ISSUER}/.well-known/jwks.json")
    return _jwks_cache


def verify_session_token(
    token: str,
    cache: Optional[JwksCache] = None,
    issuer: str = OIDC_ISSUER,
    audience: str = OIDC_CLIENT_ID,
) -> dict[str, Any]:
    if not issuer:
        raise IdentityError("OIDC issuer is not configured")
    cache = cache or get_jwks_cache()
    try:
        header = jwt.get_unverified_header(token)
        key = cache.signing_key(header.get("kid"))
        return jwt.decode(
            token,
            key.key,
            algorithms=SESSION_ALGORITHMS,
            audience=audience,
            issuer=issuer,
        )
    except jwt.PyJWTError as exc:
        raise IdentityError(str(exc)) from exc
