"""OAuth 2.1 endpoints for MCP server authentication.

This module contains:
- Protected resource metadata (/.well-known/oauth-protected-resource)
- Authorization flow start (/authorize), Authorization Code + PKCE
- Callback and code exchange (/callback)

The identity authority is external; this server is a public client and
never sends a client secret.
"""

import logging
import secrets

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from oauth.errors import TokenExchangeError, UpstreamUnavailable
from oauth.pkce import CHALLENGE_METHOD, issue_challenge
from oauth.templates import render_error_page, render_success_page

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])


# ============== OAuth 2.0 Protected Resource Metadata ==============

@router.get("/.well-known/oauth-protected-resource")
@router.get("/.well-known/oauth-protected-resource/mcp")
async def oauth_protected_resource(request: Request):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    config = request.app.state.config
    return {
        "resource": config.server_url,
        "authorization_servers": [config.issuer],
        "bearer_methods_supported": ["header"],
        "scopes_supported": config.scopes,
        "resource_documentation": f"{config.server_url}/docs",
    }


# ============== Authorization Flow ==============

@router.get("/authorize")
async def authorize(
    request: Request,
    scope: str = "",
    state: str = "",
    code_challenge: str = "",
    code_challenge_method: str = "",
):
    """Start the flow: redirect the user to the identity authority."""
    app_state = request.app.state

    state = state or secrets.token_urlsafe(24)

    if code_challenge:
        # Caller runs its own PKCE and will present the verifier at /callback
        method = code_challenge_method or CHALLENGE_METHOD
        if method != CHALLENGE_METHOD:
            return JSONResponse(
                {"error": "invalid_request", "error_description": "code_challenge_method must be S256"},
                status_code=400,
            )
        logger.info("[OAUTH] Authorization request with caller-supplied PKCE challenge")
    else:
        verifier, code_challenge = issue_challenge()
        method = CHALLENGE_METHOD
        app_state.pkce_store.remember(state, verifier)
        logger.info("[OAUTH] Authorization request, server-issued PKCE challenge stored")

    url = app_state.idp.build_authorize_url(state, code_challenge, method, scope or None)
    return RedirectResponse(url=url, status_code=302)


@router.get("/callback")
async def callback(
    request: Request,
    code: str = "",
    state: str = "",
    code_verifier: str = "",
    error: str = "",
    error_description: str = "",
):
    """Handle the authority's redirect and exchange the code for a token."""
    app_state = request.app.state

    if error:
        logger.warning(f"[OAUTH] Authorization error from identity provider: {error}")
        return HTMLResponse(
            render_error_page("Authorization Failed", f"Error: {error}",
                              details=error_description or "No description provided"),
            status_code=400,
        )

    if not state:
        logger.warning("[OAUTH] Callback rejected: missing state")
        return HTMLResponse(
            render_error_page("Invalid Callback", "Missing state parameter", restart_login=True),
            status_code=400,
        )

    if not code:
        logger.warning("[OAUTH] Callback rejected: missing authorization code")
        return HTMLResponse(
            render_error_page("Invalid Callback", "Missing authorization code", restart_login=True),
            status_code=400,
        )

    # Consume any stored verifier so the flow can only complete once
    stored_verifier = app_state.pkce_store.redeem(state)
    verifier = code_verifier or stored_verifier
    if not verifier:
        return HTMLResponse(
            render_error_page(
                "Login Session Expired",
                "This login attempt has expired or was already completed.",
                restart_login=True,
            ),
            status_code=400,
        )

    try:
        token = await app_state.idp.exchange_code(code, verifier)
    except TokenExchangeError as e:
        logger.warning(f"[OAUTH] Token exchange rejected: {e.error}")
        return HTMLResponse(
            render_error_page(
                "Authentication Failed",
                "Error exchanging authorization code for access token.",
                details=f"{e.error}: {e.description}" if e.description else e.error,
                restart_login=True,
            ),
            status_code=400,
        )
    except UpstreamUnavailable as e:
        logger.warning(f"[OAUTH] Token exchange failed: {e.message}")
        return HTMLResponse(
            render_error_page(
                "Authentication Failed",
                "The identity provider could not be reached. Please try again shortly.",
            ),
            status_code=502,
        )

    session_id = app_state.access_tokens.add(token.access_token, token.expires_in, token.scope)
    logger.info(f"[OAUTH] Access token stored (expires in {token.expires_in}s)")
    return HTMLResponse(render_success_page(session_id))
