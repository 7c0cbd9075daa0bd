"""
Identity Verification - RS256 bearer tokens checked against the provider's JWKS.

The key set is fetched with httpx and cached for JWKS_CACHE_TTL_SECONDS. A
token signed with an unknown key id triggers a refetch, so key rotation is
picked up without waiting for the TTL; such refetches happen at most once per
JWKS_UNKNOWN_KID_REFRESH_SECONDS.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx
import jwt
from structlog import get_logger

from gateway.config import Settings
from gateway.exceptions import AuthenticationError, TokenExpiredError
from gateway.models.domain import VerifiedIdentity

logger = get_logger(__name__)

ALLOWED_ALGORITHMS = ["RS256"]


class JWKSCache:
    """Read-mostly cache of the provider's public signing keys."""

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: int,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        unknown_kid_refresh_seconds: float = 30.0,
    ) -> None:
        self.jwks_url = jwks_url
        self.ttl_seconds = ttl_seconds
        self.unknown_kid_refresh_seconds = unknown_kid_refresh_seconds
        self.clock = clock
        self._http_client = http_client
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: float | None = None
        self._unknown_kid_fetched_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=5.0)
        return self._http_client

    def _is_fresh(self) -> bool:
        return self._fetched_at is not None and (
            self.clock() - self._fetched_at < self.ttl_seconds
        )

    def _may_refetch_for_unknown_kid(self) -> bool:
        return self._unknown_kid_fetched_at is None or (
            self.clock() - self._unknown_kid_fetched_at >= self.unknown_kid_refresh_seconds
        )

    async def _fetch(self) -> None:
        """
        Fetch the key set. Callers hold `_lock`.

        Raises:
            AuthenticationError: provider unreachable or key set malformed
        """
        try:
            response = await self.http_client.get(self.jwks_url)
            response.raise_for_status()
            key_set = jwt.PyJWKSet.from_dict(response.json())
        except httpx.HTTPError as e:
            logger.error("jwks_fetch_failed", url=self.jwks_url, error=str(e))
            raise AuthenticationError("identity provider unavailable") from e
        except (ValueError, jwt.PyJWKSetError) as e:
            logger.error("jwks_parse_failed", url=self.jwks_url, error=str(e))
            raise AuthenticationError("identity provider returned invalid keys") from e

        self._keys = {k.key_id: k for k in key_set.keys if k.key_id}
        self._fetched_at = self.clock()
        logger.info("jwks_refreshed", key_count=len(self._keys))

    async def get_key(self, kid: str) -> jwt.PyJWK:
        if not self._is_fresh():
            async with self._lock:
                if not self._is_fresh():
                    await self._fetch()

        key = self._keys.get(kid)
        if key is None:
            # Possible rotation; at most one refetch per unknown_kid_refresh_seconds
            async with self._lock:
                key = self._keys.get(kid)
                if key is None and self._may_refetch_for_unknown_kid():
                    self._unknown_kid_fetched_at = self.clock()
                    await self._fetch()
                    key = self._keys.get(kid)

        if key is None:
            raise AuthenticationError(f"unknown signing key: {kid}")
        return key

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()


class IdentityVerifier:
    """Validates bearer tokens and extracts the caller's identity."""

    def __init__(self, settings: Settings, jwks: JWKSCache | None = None) -> None:
        self.settings = settings
        self.jwks = jwks or JWKSCache(
            settings.jwks_url,
            settings.jwks_cache_ttl_seconds,
            unknown_kid_refresh_seconds=settings.jwks_unknown_kid_refresh_seconds,
        )

    async def verify(self, token: str) -> VerifiedIdentity:
        """
        Verify signature, expiry, issuer and audience.

        Raises:
            AuthenticationError: token missing, malformed, expired, or not verifiable
        """
        if not token:
            raise AuthenticationError("missing bearer token")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise AuthenticationError("malformed token") from e

        kid = header.get("kid")
        if not kid:
            raise AuthenticationError("token has no key id")

        signing_key = await self.jwks.get_key(kid)

        options: dict[str, Any] = {"require": ["exp", "sub"]}
        if not self.settings.jwt_audience:
            options["verify_aud"] = False

        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                audience=self.settings.jwt_audience or None,
                issuer=self.settings.jwt_issuer or None,
                leeway=self.settings.jwt_leeway_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError() from e
        except jwt.InvalidTokenError as e:
            logger.info("token_rejected", reason=str(e))
            raise AuthenticationError(f"invalid token: {e}") from e

        return VerifiedIdentity(
            subject_id=str(claims["sub"]),
            email=claims.get("email"),
            display_name=claims.get("name"),
            claims=claims,
        )

    async def close(self) -> None:
        await self.jwks.close()
