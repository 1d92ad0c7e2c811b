"""Config management for mcp-oauth-sample.

Settings come from the process environment, optionally seeded from a local
.env file. Required values are checked once at startup by Config.validate().
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


REQUIRED_KEYS = ("AZURE_TENANT_ID", "AZURE_CLIENT_ID")
VALIDATION_MODES = ("jwks", "userinfo")


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.replace(" ", ",").split(",") if item.strip()]


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    def _int(self, key: str, default: int) -> int:
        raw = self.data.get(key)
        if raw in (None, ""):
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be an integer, got {raw!r}")

    # ============== Identity authority ==============

    @property
    def tenant_id(self) -> Optional[str]:
        return self.data.get("AZURE_TENANT_ID")

    @property
    def client_id(self) -> Optional[str]:
        return self.data.get("AZURE_CLIENT_ID")

    @property
    def authority_host(self) -> str:
        return self.data.get("AUTHORITY_HOST", "https://login.microsoftonline.com").rstrip("/")

    @property
    def authorize_url(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/oauth2/v2.0/token"

    @property
    def jwks_uri(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/discovery/v2.0/keys"

    @property
    def issuer(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/v2.0"

    @property
    def trusted_issuers(self) -> list[str]:
        configured = _split(self.data.get("TRUSTED_ISSUERS"))
        if configured:
            return configured
        # v1 tokens are still issued for some app registrations
        return [self.issuer, f"https://sts.windows.net/{self.tenant_id}/"]

    @property
    def audiences(self) -> list[str]:
        configured = _split(self.data.get("TOKEN_AUDIENCES"))
        if configured:
            return configured
        return [f"api://{self.client_id}", self.client_id, self.server_url]

    @property
    def userinfo_url(self) -> str:
        return self.data.get("USERINFO_URL", "https://graph.microsoft.com/oidc/userinfo")

    @property
    def scopes(self) -> list[str]:
        return self.data.get("OAUTH_SCOPES", "openid profile email").split()

    @property
    def validation_mode(self) -> str:
        return self.data.get("TOKEN_VALIDATION_MODE", "jwks").lower()

    # ============== Server ==============

    @property
    def server_url(self) -> str:
        return self.data.get("SERVER_URL", "http://localhost:3000").rstrip("/")

    @property
    def redirect_uri(self) -> str:
        return self.data.get("REDIRECT_URI") or f"{self.server_url}/callback"

    @property
    def host(self) -> str:
        return self.data.get("MCP_HOST", "0.0.0.0")

    @property
    def port(self) -> int:
        return self._int("PORT", 3000)

    @property
    def cors_origins(self) -> list[str]:
        return _split(self.data.get("CORS_ORIGINS", "*"))

    # ============== Timeouts and lifetimes (seconds) ==============

    @property
    def pkce_ttl(self) -> int:
        return self._int("PKCE_TTL_SECONDS", 600)

    @property
    def token_cache_ttl(self) -> int:
        return self._int("TOKEN_CACHE_TTL_SECONDS", 300)

    @property
    def clock_skew(self) -> int:
        return self._int("CLOCK_SKEW_SECONDS", 60)

    @property
    def upstream_timeout(self) -> float:
        raw = self.data.get("UPSTREAM_TIMEOUT_SECONDS")
        if raw in (None, ""):
            return 5.0
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"UPSTREAM_TIMEOUT_SECONDS must be a number, got {raw!r}")

    @property
    def jwks_cache_ttl(self) -> int:
        return self._int("JWKS_CACHE_SECONDS", 24 * 60 * 60)

    # ============== Protocol method gating ==============

    @property
    def public_methods(self) -> list[str]:
        return _split(self.data.get("MCP_AUTH_PUBLIC_METHODS", "initialize"))

    @property
    def protected_methods(self) -> list[str]:
        return _split(self.data.get("MCP_AUTH_PROTECTED_METHODS", "tools/list,tools/call"))

    @property
    def auth_default(self) -> str:
        return self.data.get("MCP_AUTH_DEFAULT", "allow").lower()

    # ============== Logging ==============

    @property
    def log_level(self) -> str:
        return self.data.get("LOG_LEVEL", "INFO").upper()

    @property
    def log_format(self) -> str:
        return self.data.get("LOG_FORMAT", "plain").lower()

    def validate(self) -> "Config":
        """Fail fast on missing or inconsistent settings."""
        problems = [f"missing {key}" for key in REQUIRED_KEYS if not self.data.get(key)]

        if self.validation_mode not in VALIDATION_MODES:
            problems.append(
                f"TOKEN_VALIDATION_MODE must be one of {', '.join(VALIDATION_MODES)}"
            )
        if self.auth_default not in ("allow", "require"):
            problems.append("MCP_AUTH_DEFAULT must be 'allow' or 'require'")
        overlap = set(self.public_methods) & set(self.protected_methods)
        if overlap:
            problems.append(f"methods both public and protected: {', '.join(sorted(overlap))}")

        for key in ("PORT", "PKCE_TTL_SECONDS", "TOKEN_CACHE_TTL_SECONDS",
                    "CLOCK_SKEW_SECONDS", "JWKS_CACHE_SECONDS"):
            try:
                self._int(key, 0)
            except ConfigError as e:
                problems.append(str(e))
        try:
            self.upstream_timeout
        except ConfigError as e:
            problems.append(str(e))

        if problems:
            raise ConfigError(
                "Invalid configuration: " + "; ".join(problems) + "\n"
                "Copy .env.example to .env and fill in your identity provider settings."
            )
        return self


def load_config(env_file: Optional[Path] = None) -> Config:
    """Load config from .env (if present) and the process environment."""
    env_file = env_file or Path(".env")
    if env_file.exists():
        load_dotenv(env_file)
    return Config(dict(os.environ))
