"""MCP Server with OAuth 2.1 authentication.

It handles:
- OAuth Authorization Code + PKCE against an external identity provider (oauth/)
- Protected resource metadata (/.well-known/oauth-protected-resource)
- MCP protocol endpoints via Streamable HTTP (/mcp, and / for compatibility)
- MCP tools (echo, get-user-info, calculate) via tools.py

The identity provider issues and signs tokens; this server is a resource
server and a public OAuth client (no client secret).
"""
import argparse
import logging
import sys
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Config, ConfigError, load_config
from logging_config import setup_logging
from oauth.endpoints import router as oauth_router
from oauth.identity import IdentityProviderClient
from oauth.middleware import BearerAuthenticator, MethodAuthPolicy
from oauth.stores import AccessTokenStore, PkceStore, TokenCache
from sessions import SessionRegistry
from streamable_http import router as mcp_router
from tools import SERVER_NAME, SERVER_VERSION, mcp

logger = logging.getLogger(__name__)

AVAILABLE_ENDPOINTS = [
    "POST / (MCP JSON-RPC)",
    "GET / (MCP SSE)",
    "DELETE / (MCP Session)",
    "POST /mcp (MCP JSON-RPC)",
    "GET /mcp (MCP SSE)",
    "DELETE /mcp (MCP Session)",
    "GET /.well-known/oauth-protected-resource (OAuth metadata)",
    "GET /authorize (OAuth flow)",
    "GET /callback (OAuth callback)",
    "GET /health",
    "GET /info",
]


def create_app(config: Config, http_client: httpx.AsyncClient = None) -> FastAPI:
    """Build the application. Config must already be validated."""
    idp = IdentityProviderClient(config, http_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[STARTUP] Server URL: {config.server_url}")
        logger.info(f"[STARTUP] Identity provider: {config.issuer}")
        logger.info(f"[STARTUP] Token validation mode: {config.validation_mode}")
        async with app.state.sessions.run():
            yield
            logger.info("[SHUTDOWN] Shutting down MCP server...")
        await idp.aclose()
        logger.info("[SHUTDOWN] MCP server shutdown complete")

    app = FastAPI(
        title="MCP OAuth Sample Server",
        description="MCP resource server with OAuth 2.1 Authorization Code + PKCE",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.idp = idp
    app.state.pkce_store = PkceStore(ttl=config.pkce_ttl)
    app.state.token_cache = TokenCache(ttl=config.token_cache_ttl)
    app.state.access_tokens = AccessTokenStore()
    app.state.authenticator = BearerAuthenticator(config, idp, app.state.token_cache)
    app.state.auth_policy = MethodAuthPolicy.from_config(config)
    app.state.sessions = SessionRegistry(mcp._mcp_server)

    # Add CORS middleware for browser-based MCP client access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials="*" not in config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
    )

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": SERVER_NAME, "sessions": len(app.state.sessions)}

    @app.get("/info")
    async def info():
        """Server info."""
        return {
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
            "endpoints": {"streamable_http": "/mcp"},
            "tools": [tool.name for tool in await mcp.list_tools()],
            "oauth": {
                "protected_resource": f"{config.server_url}/.well-known/oauth-protected-resource",
                "authorize": f"{config.server_url}/authorize",
                "authorization_server": config.issuer,
            },
        }

    # OAuth endpoints, then the MCP transport (it owns "/")
    app.include_router(oauth_router)
    app.include_router(mcp_router)

    # ============== Error Handlers ==============

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                {
                    "error": "not_found",
                    "message": f"Endpoint not found: {request.method} {request.url.path}",
                    "availableEndpoints": AVAILABLE_ENDPOINTS,
                },
                status_code=404,
            )
        return JSONResponse({"error": "http_error", "message": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"[ERROR] Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            {"error": "internal_server_error", "message": "An unexpected error occurred"},
            status_code=500,
        )

    return app


def main(argv: list[str] = None) -> int:
    """Validate configuration and run the server with uvicorn."""
    parser = argparse.ArgumentParser(description="MCP server with OAuth 2.1 + PKCE")
    parser.add_argument("--host", help="Bind address (default: MCP_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port (default: PORT or 3000)")
    args = parser.parse_args(argv)

    config = load_config()
    setup_logging(config.log_level, config.log_format)
    try:
        config.validate()
    except ConfigError as e:
        logger.error(f"[STARTUP] Configuration error: {e}")
        return 1

    import uvicorn
    app = create_app(config)
    host = args.host or config.host
    port = args.port or config.port
    logger.info(f"[STARTUP] MCP endpoint: {config.server_url}/mcp")
    logger.info(f"[STARTUP] Authorize: {config.server_url}/authorize")
    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
