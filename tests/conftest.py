"""Shared fixtures: config, a fake identity provider and the app."""
import time
from collections import Counter
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from config import Config
from main import create_app

TENANT = "test-tenant"
CLIENT_ID = "test-client"
ISSUER = f"https://login.microsoftonline.com/{TENANT}/v2.0"


def make_config(**overrides) -> Config:
    data = {
        "AZURE_TENANT_ID": TENANT,
        "AZURE_CLIENT_ID": CLIENT_ID,
        "SERVER_URL": "http://testserver",
        "TOKEN_VALIDATION_MODE": "userinfo",
    }
    data.update(overrides)
    return Config(data)


def make_token(**claims) -> str:
    """An HS256 JWT; only good for structural checks, never for signature checks."""
    payload = {
        "iss": ISSUER,
        "sub": "user-1",
        "aud": f"api://{CLIENT_ID}",
        "iat": int(time.time()),
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    return jwt.encode(payload, "not-the-real-key-but-long-enough-for-hs256", algorithm="HS256")


class FakeAuthority:
    """Stands in for the identity provider's token, profile and key endpoints."""

    def __init__(self, config: Config):
        self.config = config
        self.calls = Counter()
        self.token_forms = []
        self.token_response = (200, {"access_token": "at-123", "expires_in": 3600, "token_type": "Bearer"})
        self.profile_response = (200, {"sub": "user-1", "name": "Ada Lovelace", "email": "ada@example.com"})
        self.jwks = {"keys": []}
        self.timeouts = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).split("?")[0]
        if url == self.config.token_url:
            name = "token"
            self.token_forms.append(dict(parse_qsl(request.content.decode())))
            status, body = self.token_response
        elif url == self.config.userinfo_url:
            name = "profile"
            status, body = self.profile_response
        elif url == self.config.jwks_uri:
            name = "jwks"
            status, body = 200, self.jwks
        else:
            return httpx.Response(404, json={"error": "not_found"})

        self.calls[name] += 1
        if name in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)
        if isinstance(body, str):
            return httpx.Response(status, text=body, headers={"Content-Type": "text/html"})
        return httpx.Response(status, json=body)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def authority(config):
    return FakeAuthority(config)


@pytest.fixture
def app(config, authority):
    return create_app(config, authority.http_client())


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def token():
    return make_token()


# ---------------------------------------------------------------------------
# MCP over Streamable HTTP
# ---------------------------------------------------------------------------

ACCEPT = "application/json, text/event-stream"

INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-06-18",
        "capabilities": {},
        "clientInfo": {"name": "pytest", "version": "0.1"},
    },
}

INITIALIZED = {"jsonrpc": "2.0", "method": "notifications/initialized"}


def mcp_post(client, message, session_id=None, token=None, path="/mcp"):
    headers = {"Accept": ACCEPT}
    if session_id:
        headers["Mcp-Session-Id"] = session_id
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return client.post(path, json=message, headers=headers)


def open_session(client, path="/mcp"):
    """Initialize a session and finish the handshake; returns its ID."""
    response = mcp_post(client, INITIALIZE, path=path)
    assert response.status_code == 200
    session_id = response.headers["mcp-session-id"]
    assert mcp_post(client, INITIALIZED, session_id, path=path).status_code == 202
    return session_id


def tool_call(name, arguments, request_id=2):
    return {"jsonrpc": "2.0", "id": request_id, "method": "tools/call",
            "params": {"name": name, "arguments": arguments}}
