"""JWT utilities for bearer tokens issued by the identity authority.

Provides:
- inspect_token(): structural checks (issuer, expiry) on unverified claims.
  The result is never trusted as an identity on its own.
- JwksVerifier: signature verification against the authority's published
  signing keys, with an in-memory key set cache.
"""

import logging
import time
from typing import Callable, Optional

import jwt
from jwt.exceptions import PyJWKError, PyJWKSetError

from oauth.errors import InvalidToken

logger = logging.getLogger(__name__)

# Asymmetric algorithms only; "none" and HMAC are never accepted
ALLOWED_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "ES256", "ES384"]

# Minimum gap between key set refetches triggered by an unknown kid
MIN_REFRESH_INTERVAL = 300


def inspect_token(token: str, trusted_issuers: list[str], clock_skew: int = 60,
                  now: float = None) -> dict:
    """Decode claims without verifying the signature and check issuer and expiry.

    Args:
        token: The raw bearer token
        trusted_issuers: Accepted "iss" values
        clock_skew: Seconds of tolerance applied to "exp"
        now: Current time (defaults to time.time())

    Returns:
        The unverified claims.

    Raises:
        InvalidToken: if the token is not a JWT, comes from an untrusted
            issuer, or has expired.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        logger.debug(f"[JWT] Undecodable token: {e}")
        raise InvalidToken("token is not a valid JWT")

    issuer = claims.get("iss")
    if issuer not in trusted_issuers:
        logger.info(f"[JWT] Untrusted issuer: {issuer}")
        raise InvalidToken("token issuer is not trusted")

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise InvalidToken("token has no expiry")
    now = time.time() if now is None else now
    if exp + clock_skew < now:
        raise InvalidToken("token has expired")

    return claims


class JwksVerifier:
    """Verifies token signatures with keys from the authority's JWKS endpoint."""

    def __init__(self, fetch_jwks: Callable, audiences: list[str], trusted_issuers: list[str],
                 clock_skew: int = 60, cache_ttl: int = 24 * 60 * 60, clock: Callable[[], float] = time.time):
        self._fetch_jwks = fetch_jwks
        self.audiences = audiences
        self.trusted_issuers = trusted_issuers
        self.clock_skew = clock_skew
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None

    async def _refresh(self) -> None:
        data = await self._fetch_jwks()
        try:
            key_set = jwt.PyJWKSet.from_dict(data)
        except (PyJWKSetError, PyJWKError) as e:
            logger.warning(f"[JWT] No usable signing keys in JWKS: {e}")
            key_set = None
        self._keys = {key.key_id: key for key in key_set.keys} if key_set else {}
        self._fetched_at = self._clock()
        logger.info(f"[JWT] Loaded {len(self._keys)} signing keys")

    async def get_signing_key(self, kid: Optional[str]) -> jwt.PyJWK:
        if not isinstance(kid, str) or not kid:
            raise InvalidToken("token header has no usable key id")

        now = self._clock()
        if self._fetched_at is None or now - self._fetched_at >= self.cache_ttl:
            await self._refresh()
        elif kid not in self._keys and now - self._fetched_at >= MIN_REFRESH_INTERVAL:
            # Key rotation
            await self._refresh()

        key = self._keys.get(kid)
        if key is None:
            raise InvalidToken("token signed with an unknown key")
        return key

    async def verify(self, token: str) -> dict:
        """Return verified claims or raise InvalidToken."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            raise InvalidToken("token is not a valid JWT")

        signing_key = await self.get_signing_key(header.get("kid"))

        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                audience=self.audiences or None,
                leeway=self.clock_skew,
                options={"require": ["exp", "iss"], "verify_aud": bool(self.audiences)},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidToken("token has expired")
        except jwt.InvalidAudienceError:
            logger.info("[JWT] Token audience does not match this resource server")
            raise InvalidToken("token audience does not match this resource server")
        except jwt.InvalidTokenError as e:
            logger.info(f"[JWT] Signature verification failed: {e}")
            raise InvalidToken("token signature verification failed")

        if claims.get("iss") not in self.trusted_issuers:
            raise InvalidToken("token issuer is not trusted")
        return claims
