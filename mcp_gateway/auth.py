"""
Bearer token verification against the issuer's published key set.

This module is the Authentication (AuthN) layer of the gateway:
- Decodes the JWT and checks its signature with the issuer's JWKS
- Checks "iss", "aud" and "exp" against the configured issuer and audience
- Collects the caller's roles from the verified payload

Every failure raises AuthError with a stable `kind` the dispatcher reports
to the caller. Claims are produced fresh for each request and never cached;
only the key set is cached (per issuer, with a bounded TTL).

Token structure (Keycloak access token, abbreviated):
    {
        "iss": "http://keycloak.local/realms/mcp",
        "aud": ["mcp-gateway", "account"],
        "sub": "3f0c...",
        "exp": 1738800000,
        "realm_access": {"roles": ["viewer"]},
        "resource_access": {"mcp-gateway": {"roles": ["operator"]}}
    }
"""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
import jwt

from mcp_gateway.config import Settings

logger = logging.getLogger("mcp_gateway.auth")


class AuthErrorKind(str, Enum):
    """Why a token was rejected. Values appear in logs, never in metric labels."""

    MISSING_TOKEN = "MissingToken"
    INVALID_SIGNATURE = "InvalidSignature"
    EXPIRED = "Expired"
    AUDIENCE_MISMATCH = "AudienceMismatch"
    ISSUER_MISMATCH = "IssuerMismatch"
    KEY_SET_UNAVAILABLE = "KeySetUnavailable"
    INVALID_CLAIMS = "InvalidClaims"


class AuthError(Exception):
    """
    Raised when a bearer token cannot be verified.

    Attributes:
        kind: Which verification step failed (see AuthErrorKind)
        message: Human-readable description, safe to return to the caller
    """

    def __init__(self, kind: AuthErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class Claims:
    """
    Verified token claims for a single request.

    Frozen so the validated identity cannot be altered between the
    authentication and authorization steps.

    Attributes:
        subject: The "sub" claim
        roles: Union of top-level, realm and client roles
        audience: The configured audience the token was accepted for
        issuer: The "iss" claim
        expiry: The "exp" claim as an aware UTC datetime
        raw: The full decoded payload
    """

    subject: str
    roles: frozenset[str]
    audience: str
    issuer: str
    expiry: datetime
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expiry <= now


def extract_bearer_token(authorization_header: str | None) -> str:
    """
    Return the token from an "Authorization: Bearer <token>" header value.

    Returns an empty string when the header is absent or uses another
    scheme, which verify() reports as MissingToken. The scheme is matched
    case-insensitively per RFC 6750.
    """
    if not authorization_header:
        return ""
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


# ---------------------------------------------------------------------------
# Key set cache
# ---------------------------------------------------------------------------


class KeySetFetchError(Exception):
    """The JWKS endpoint could not be reached or returned an unusable document."""


@dataclass(frozen=True)
class _CachedKeySet:
    """Keys of one issuer, by kid, and when they were fetched."""

    keys: Mapping[str, jwt.PyJWK]
    fetched_at: float


class JWKSCache:
    """
    Per-issuer cache of signing keys.

    Only one refresh per issuer is in flight at a time: concurrent callers
    that find the entry stale queue on the issuer's lock and re-check the
    entry once they hold it, so a burst of requests costs one fetch.

    When a refresh fails and an older copy exists, the older copy keeps
    being served. Without any copy the caller gets KeySetUnavailable.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        min_refresh_seconds: float = 30.0,
        fetch_timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._min_refresh = min_refresh_seconds
        self._fetch_timeout = fetch_timeout_seconds
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()
        self._clock = clock
        self._entries: dict[str, _CachedKeySet] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.fetch_count = 0

    def has_keys(self, issuer: str) -> bool:
        return issuer in self._entries

    async def get_key_set(
        self, issuer: str, jwks_url: str, *, force: bool = False
    ) -> Mapping[str, jwt.PyJWK]:
        """
        Return the issuer's keys, refreshing them if stale.

        Args:
            issuer: Cache key
            jwks_url: Where to fetch the key set on a miss
            force: Refresh even within the TTL (used for an unknown "kid"),
                   limited to once per min_refresh_seconds

        Raises:
            AuthError(KEY_SET_UNAVAILABLE): fetch failed and nothing is cached
        """
        entry = self._entries.get(issuer)
        if entry is not None and not self._needs_refresh(entry, force):
            return entry.keys

        lock = self._locks.setdefault(issuer, asyncio.Lock())
        async with lock:
            # Another request may have refreshed while we waited for the lock.
            entry = self._entries.get(issuer)
            if entry is not None and not self._needs_refresh(entry, force):
                return entry.keys

            try:
                keys = await self._fetch(jwks_url)
            except KeySetFetchError as e:
                if entry is not None:
                    logger.warning(
                        "Key set refresh failed, serving cached copy",
                        extra={"event_data": {"issuer": issuer, "reason": str(e)}},
                    )
                    return entry.keys
                logger.error(
                    "Key set unavailable",
                    extra={"event_data": {"issuer": issuer, "reason": str(e)}},
                )
                raise AuthError(
                    AuthErrorKind.KEY_SET_UNAVAILABLE,
                    "Signing keys are currently unavailable",
                ) from e

            self._entries[issuer] = _CachedKeySet(keys=keys, fetched_at=self._clock())
            return keys

    def _needs_refresh(self, entry: _CachedKeySet, force: bool) -> bool:
        age = self._clock() - entry.fetched_at
        if force:
            return age >= self._min_refresh
        return age >= self._ttl

    async def _fetch(self, jwks_url: str) -> dict[str, jwt.PyJWK]:
        self.fetch_count += 1
        try:
            response = await self._client.get(jwks_url, timeout=self._fetch_timeout)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise KeySetFetchError(f"{type(e).__name__}: {e}") from e

        if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
            raise KeySetFetchError("JWKS document has no 'keys' list")

        keys: dict[str, jwt.PyJWK] = {}
        for jwk in document["keys"]:
            if not isinstance(jwk, dict) or jwk.get("use", "sig") != "sig":
                continue
            try:
                keys[jwk.get("kid", "")] = jwt.PyJWK(jwk)
            except jwt.exceptions.PyJWTError as e:
                # Keycloak publishes encryption keys and algorithms we may not
                # support next to the signing key; skip rather than fail.
                logger.debug("Skipping unusable JWK %s: %s", jwk.get("kid"), e)

        logger.info(
            "Fetched signing keys",
            extra={"event_data": {"jwks_url": jwks_url, "key_ids": sorted(keys)}},
        )
        return keys

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Token verifier
# ---------------------------------------------------------------------------


def _collect_roles(payload: Mapping[str, Any], audience: str) -> frozenset[str]:
    sources: list[Any] = [payload.get("roles", [])]

    realm_access = payload.get("realm_access")
    if isinstance(realm_access, Mapping):
        sources.append(realm_access.get("roles", []))

    resource_access = payload.get("resource_access")
    if isinstance(resource_access, Mapping):
        client_access = resource_access.get(audience)
        if isinstance(client_access, Mapping):
            sources.append(client_access.get("roles", []))

    roles: set[str] = set()
    for source in sources:
        # Same type check the scope claim always had: a string here would
        # otherwise be iterated character by character.
        if not isinstance(source, list) or not all(isinstance(r, str) for r in source):
            raise AuthError(
                AuthErrorKind.INVALID_CLAIMS, "Invalid roles claim: must be a list of strings"
            )
        roles.update(source)
    return frozenset(roles)


class TokenVerifier:
    """
    Verifies bearer tokens and returns their Claims.

    Two key sources are supported:
    - the issuer's JWKS (production; Keycloak signs with RS256)
    - a static HS256 shared secret (local development with
      scripts/generate_token.py)
    """

    def __init__(
        self,
        *,
        issuer: str,
        audience: str,
        jwks_url: str = "",
        algorithms: list[str] | None = None,
        key_cache: JWKSCache | None = None,
        secret_key: str = "",
        leeway_seconds: int = 0,
    ):
        self.issuer = issuer
        self.audience = audience
        self.jwks_url = jwks_url
        self._secret_key = secret_key
        if secret_key:
            self._algorithms = ["HS256"]
        else:
            self._algorithms = list(algorithms or ["RS256"])
        self._key_cache = key_cache if key_cache is not None else JWKSCache()
        self._leeway = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings, key_cache: JWKSCache | None = None) -> "TokenVerifier":
        if key_cache is None:
            key_cache = JWKSCache(
                ttl_seconds=settings.jwks_cache_ttl_seconds,
                min_refresh_seconds=settings.jwks_min_refresh_seconds,
                fetch_timeout_seconds=settings.jwks_fetch_timeout_seconds,
            )
        return cls(
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            jwks_url=settings.resolved_jwks_url(),
            algorithms=settings.jwt_algorithms,
            key_cache=key_cache,
            secret_key=settings.jwt_secret_key,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    @property
    def uses_static_key(self) -> bool:
        return bool(self._secret_key)

    @property
    def key_cache(self) -> JWKSCache:
        return self._key_cache

    async def warm_up(self) -> bool:
        """Fetch the issuer's keys ahead of traffic. False when they are unavailable."""
        if self._secret_key:
            return True
        try:
            await self._key_cache.get_key_set(self.issuer, self.jwks_url)
        except AuthError:
            return False
        return True

    async def verify(self, token: str | None) -> Claims:
        """
        Verify a raw bearer token (without the "Bearer " prefix).

        Raises:
            AuthError: with the kind of the first check that failed
        """
        if not token or not token.strip():
            raise AuthError(AuthErrorKind.MISSING_TOKEN, "Missing bearer token")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError:
            raise AuthError(AuthErrorKind.MISSING_TOKEN, "Malformed bearer token")

        if header.get("alg") not in self._algorithms:
            raise AuthError(AuthErrorKind.INVALID_SIGNATURE, "Token algorithm not permitted")

        key = await self._signing_key(header)

        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self.audience,
                issuer=self.issuer,
                leeway=self._leeway,
                options={"require": ["exp", "sub", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthError(AuthErrorKind.EXPIRED, "Token has expired")
        except jwt.InvalidAudienceError:
            raise AuthError(AuthErrorKind.AUDIENCE_MISMATCH, "Token audience mismatch")
        except jwt.InvalidIssuerError:
            raise AuthError(AuthErrorKind.ISSUER_MISMATCH, "Token issuer mismatch")
        except jwt.MissingRequiredClaimError as e:
            if e.claim == "aud":
                raise AuthError(AuthErrorKind.AUDIENCE_MISMATCH, "Token audience mismatch")
            raise AuthError(AuthErrorKind.INVALID_CLAIMS, f"Token is missing the '{e.claim}' claim")
        except jwt.InvalidSignatureError:
            raise AuthError(AuthErrorKind.INVALID_SIGNATURE, "Token signature verification failed")
        except jwt.DecodeError:
            raise AuthError(AuthErrorKind.MISSING_TOKEN, "Malformed bearer token")
        except jwt.InvalidTokenError as e:
            # nbf/iat problems and similar claim-level rejections
            raise AuthError(AuthErrorKind.INVALID_CLAIMS, f"Invalid token claims: {e}")

        subject = payload["sub"]
        if not isinstance(subject, str) or not subject:
            raise AuthError(AuthErrorKind.INVALID_CLAIMS, "Invalid subject claim")

        return Claims(
            subject=subject,
            roles=_collect_roles(payload, self.audience),
            audience=self.audience,
            issuer=payload["iss"],
            expiry=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            raw=payload,
        )

    async def _signing_key(self, header: Mapping[str, Any]) -> Any:
        if self._secret_key:
            return self._secret_key

        kid = header.get("kid")
        keys = await self._key_cache.get_key_set(self.issuer, self.jwks_url)
        key = self._select_key(keys, kid)
        if key is None:
            # The issuer may have rotated keys since the last fetch.
            keys = await self._key_cache.get_key_set(self.issuer, self.jwks_url, force=True)
            key = self._select_key(keys, kid)
        if key is None:
            raise AuthError(AuthErrorKind.INVALID_SIGNATURE, "No signing key matches the token")
        return key.key

    @staticmethod
    def _select_key(keys: Mapping[str, jwt.PyJWK], kid: str | None) -> jwt.PyJWK | None:
        if kid is not None:
            return keys.get(kid)
        if len(keys) == 1:
            return next(iter(keys.values()))
        return None
