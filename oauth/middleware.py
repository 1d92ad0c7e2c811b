"""Bearer token gate for MCP endpoints.

Validates Bearer tokens and builds the 401 challenge clients use to find
where to re-authenticate. Which protocol methods need a token is decided by
an explicit MethodAuthPolicy, not by per-method checks in the handlers.
"""

import logging
from typing import Iterable, Optional

from fastapi.responses import JSONResponse

from config import Config
from oauth.errors import AuthError, MalformedCredentials, MissingCredentials, UpstreamUnavailable
from oauth.identity import Identity, IdentityProviderClient
from oauth.jwt_utils import JwksVerifier, inspect_token
from oauth.stores import TokenCache

logger = logging.getLogger(__name__)


class MethodAuthPolicy:
    """Decides which JSON-RPC methods require a bearer token.

    Methods listed as public never need one, protected ones always do, and
    anything else follows default_requires_auth.
    """

    def __init__(self, public: Iterable[str], protected: Iterable[str], default_requires_auth: bool = False):
        self.public = frozenset(public)
        self.protected = frozenset(protected)
        self.default_requires_auth = default_requires_auth

    @classmethod
    def from_config(cls, config: Config) -> "MethodAuthPolicy":
        return cls(config.public_methods, config.protected_methods, config.auth_default == "require")

    def requires_auth(self, method: Optional[str]) -> bool:
        if method in self.public:
            return False
        if method in self.protected:
            return True
        return self.default_requires_auth


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Pull the token out of an Authorization header value.

    Tokens are only accepted from the header, never from the query string.
    """
    if not authorization:
        raise MissingCredentials()
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        raise MalformedCredentials('expected "Authorization: Bearer <token>"')
    return token.strip()


class BearerAuthenticator:
    """Resolves a bearer token to a verified Identity.

    Structural checks run first; the token cache is consulted next; on a miss
    the token is verified by signature (jwks mode) or by the authority's
    profile endpoint (userinfo mode) and the result cached.
    """

    def __init__(self, config: Config, idp: IdentityProviderClient, cache: TokenCache,
                 verifier: JwksVerifier = None):
        self.config = config
        self.idp = idp
        self.cache = cache
        self.mode = config.validation_mode
        self.verifier = verifier or JwksVerifier(
            idp.fetch_jwks,
            audiences=config.audiences,
            trusted_issuers=config.trusted_issuers,
            clock_skew=config.clock_skew,
            cache_ttl=config.jwks_cache_ttl,
        )
        if self.mode == "userinfo":
            logger.warning("[AUTH] Degraded mode: tokens are verified by the profile endpoint, not by signature")

    async def authenticate(self, authorization: Optional[str]) -> Identity:
        token = extract_bearer_token(authorization)
        claims = inspect_token(token, self.config.trusted_issuers, self.config.clock_skew)

        cached = self.cache.get(token)
        if cached is not None:
            logger.debug("[AUTH] Token cache hit")
            return cached

        if self.mode == "jwks":
            identity = Identity.from_verified_claims(await self.verifier.verify(token))
        else:
            identity = Identity.from_profile(await self.idp.fetch_profile(token), claims)

        self.cache.remember(token, identity, token_expires_at=claims.get("exp"))
        logger.info(f"[AUTH] Token verified by {identity.verified_by} for user: {identity.display_name}")
        return identity


def unauthorized_response(config: Config, error: AuthError) -> JSONResponse:
    """Return 401 with a WWW-Authenticate challenge (RFC 6750 / RFC 9728)."""
    description = error.message.replace('"', "'")
    challenge = ", ".join([
        f'Bearer realm="{config.server_url}"',
        f'authorization_uri="{config.server_url}/authorize"',
        f'resource_metadata="{config.server_url}/.well-known/oauth-protected-resource"',
        f'error="{error.error_code}"',
        f'error_description="{description}"',
    ])
    return JSONResponse(
        {
            "error": "unauthorized",
            "message": error.message,
            "authorization_uri": f"{config.server_url}/authorize",
        },
        status_code=401,
        headers={"WWW-Authenticate": challenge},
    )


def upstream_unavailable_response(error: UpstreamUnavailable) -> JSONResponse:
    """Return 503 when the identity authority cannot answer; the client may retry."""
    return JSONResponse(
        {"error": "temporarily_unavailable", "message": error.message},
        status_code=503,
        headers={"Retry-After": "5"},
    )

