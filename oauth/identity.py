"""Identity authority client and the verified Identity type.

All calls to the external identity provider (authorization redirect, code
exchange, profile lookup, signing keys) go through IdentityProviderClient.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from config import Config
from oauth.errors import InvalidToken, TokenExchangeError, UpstreamUnavailable

logger = logging.getLogger(__name__)

# Only the two sanctioned resolution paths below hold this key
_CONSTRUCTION_KEY = object()


class Identity:
    """Who a bearer token belongs to, established by a verified path.

    Build one with from_verified_claims() (local signature verification) or
    from_profile() (the authority's own profile endpoint). There is no way to
    build an Identity from unverified token claims.
    """

    def __init__(self, key: object, user_id: str, name: Optional[str], email: Optional[str],
                 verified_by: str, claims: dict, profile: dict):
        if key is not _CONSTRUCTION_KEY:
            raise TypeError("Identity must come from from_verified_claims() or from_profile()")
        self.user_id = user_id
        self.name = name
        self.email = email
        self.verified_by = verified_by
        self.claims = claims
        self.profile = profile

    @classmethod
    def from_verified_claims(cls, claims: dict) -> "Identity":
        return cls(
            _CONSTRUCTION_KEY,
            user_id=claims.get("oid") or claims.get("sub"),
            name=claims.get("name"),
            email=claims.get("email") or claims.get("preferred_username") or claims.get("upn"),
            verified_by="signature",
            claims=claims,
            profile={},
        )

    @classmethod
    def from_profile(cls, profile: dict, claims: dict = None) -> "Identity":
        claims = claims or {}
        return cls(
            _CONSTRUCTION_KEY,
            user_id=profile.get("sub") or profile.get("id") or claims.get("oid") or claims.get("sub"),
            name=profile.get("name") or profile.get("displayName"),
            email=profile.get("email") or profile.get("mail") or profile.get("userPrincipalName"),
            verified_by="profile",
            claims=claims,
            profile=profile,
        )

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.user_id or "unknown"

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "verified_by": self.verified_by,
        }

    def __repr__(self) -> str:
        return f"Identity(user_id={self.user_id!r}, verified_by={self.verified_by!r})"


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: str = ""


def _error_fields(response: httpx.Response) -> tuple[str, str]:
    try:
        data = response.json()
    except ValueError:
        return f"http_{response.status_code}", response.text[:500]
    if not isinstance(data, dict):
        return f"http_{response.status_code}", ""
    return data.get("error", f"http_{response.status_code}"), data.get("error_description", "")


class IdentityProviderClient:
    """Talks to the external identity authority over one shared httpx client."""

    def __init__(self, config: Config, http_client: httpx.AsyncClient = None):
        self.config = config
        self.http = http_client or httpx.AsyncClient(timeout=config.upstream_timeout)

    async def aclose(self) -> None:
        await self.http.aclose()

    def build_authorize_url(self, state: str, code_challenge: str, code_challenge_method: str,
                            scope: str = None) -> str:
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "redirect_uri": self.config.redirect_uri,
            "scope": scope or " ".join(self.config.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
            "response_mode": "query",
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str) -> TokenResponse:
        """Exchange an authorization code + PKCE verifier for an access token.

        Public client: no client secret is sent.
        """
        form = {
            "client_id": self.config.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "code_verifier": code_verifier,
            "scope": " ".join(self.config.scopes),
        }
        try:
            response = await self.http.post(
                self.config.token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.config.upstream_timeout,
            )
        except httpx.TimeoutException:
            logger.warning("[OAUTH] Token endpoint timed out")
            raise UpstreamUnavailable("token endpoint timed out")
        except httpx.HTTPError as e:
            logger.warning(f"[OAUTH] Token endpoint unreachable: {e}")
            raise UpstreamUnavailable("token endpoint unreachable")

        if response.status_code >= 500:
            raise UpstreamUnavailable(f"token endpoint returned {response.status_code}")
        if response.status_code != 200:
            error, description = _error_fields(response)
            raise TokenExchangeError(error, description)

        try:
            data = response.json()
        except ValueError:
            raise TokenExchangeError("invalid_response", "Token endpoint did not return JSON")
        if not isinstance(data, dict):
            raise TokenExchangeError("invalid_response", "Token endpoint returned an unexpected payload")

        access_token = data.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise TokenExchangeError("invalid_response", "No access token received from authorization server")
        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            raise TokenExchangeError("invalid_response", "Token endpoint returned a non-numeric expires_in")

        return TokenResponse(
            access_token=access_token,
            expires_in=expires_in,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope") or "",
        )

    async def fetch_profile(self, token: str) -> dict[str, Any]:
        """Ask the authority who the token belongs to.

        Raises InvalidToken when the authority rejects the token and
        UpstreamUnavailable for every other failure.
        """
        try:
            response = await self.http.get(
                self.config.userinfo_url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=self.config.upstream_timeout,
            )
        except httpx.TimeoutException:
            logger.warning("[AUTH] Profile endpoint timed out")
            raise UpstreamUnavailable("profile endpoint timed out")
        except httpx.HTTPError as e:
            logger.warning(f"[AUTH] Profile endpoint unreachable: {e}")
            raise UpstreamUnavailable("profile endpoint unreachable")

        if response.status_code in (401, 403):
            raise InvalidToken("identity provider rejected the token")
        if response.status_code != 200:
            raise UpstreamUnavailable(f"profile endpoint returned {response.status_code}")
        try:
            profile = response.json()
        except ValueError:
            raise UpstreamUnavailable("profile endpoint returned invalid JSON")
        if not isinstance(profile, dict):
            raise UpstreamUnavailable("profile endpoint returned an unexpected payload")
        return profile

    async def fetch_jwks(self) -> dict[str, Any]:
        try:
            response = await self.http.get(self.config.jwks_uri, timeout=self.config.upstream_timeout)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning(f"[AUTH] Could not fetch signing keys: {e}")
            raise UpstreamUnavailable("signing keys unavailable")
        except ValueError:
            raise UpstreamUnavailable("signing keys endpoint returned invalid JSON")
