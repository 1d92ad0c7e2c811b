"""MCP Tools for mcp-oauth-sample.

This module defines the FastMCP server instance and the tools (echo,
get-user-info, calculate) exposed to clients. The bearer gate in
streamable_http.py stores the caller's Identity and token on the HTTP
request state; tools read them back through the request context.
"""

import json
import logging
from typing import Literal, Optional, Union

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from oauth.errors import InvalidToken, UpstreamUnavailable

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-oauth-sample"
SERVER_VERSION = "1.0.0"

# Create the FastMCP server instance
mcp = FastMCP(SERVER_NAME, instructions="Sign in at /authorize before calling tools.")
mcp._mcp_server.version = SERVER_VERSION

Number = Union[int, float]


def _http_request(ctx: Context):
    """The HTTP request carrying this tool call, or None outside one."""
    try:
        return ctx.request_context.request
    except ValueError:
        return None


def _request_value(ctx: Context, name: str):
    request = _http_request(ctx)
    if request is None:
        return None
    return getattr(request.state, name, None)


def _caller(ctx: Context) -> str:
    identity = _request_value(ctx, "identity")
    return identity.display_name if identity is not None else "anonymous"


@mcp.tool(name="echo", description="Echoes a message back with user context")
async def echo(message: str, ctx: Context) -> str:
    """Echo back the input message, confirming the authenticated caller.

    Args:
        message: The message to echo back
    """
    if not message:
        raise ToolError("Missing required parameter: message")
    logger.info(f"[TOOL] echo invoked, message length: {len(message)}")
    await ctx.info(f"echo invoked by {_caller(ctx)}")
    return f"Echo: {message}\n\nAuthenticated as {_caller(ctx)} via OAuth 2.0 PKCE (Public Client)"


@mcp.tool(
    name="get-user-info",
    description="Returns authenticated user information from the access token and the identity provider profile",
)
async def get_user_info(ctx: Context, login_session: Optional[str] = None) -> str:
    """Re-resolve the caller's profile with the identity provider.

    The token is re-checked at call time, so a token revoked since the gate
    accepted it surfaces here as a tool error.

    Args:
        login_session: Session ID shown after browser login; uses that stored
            token instead of the request token
    """
    request = _http_request(ctx)
    if request is None:
        raise ToolError("No HTTP request context for this call")
    app_state = request.app.state

    token = getattr(request.state, "access_token", None)
    if login_session:
        record = app_state.access_tokens.lookup(login_session)
        if record is None:
            raise ToolError("Unknown or expired login session; restart the login flow")
        token = record.access_token
    if not token:
        raise ToolError("No access token available for this request")

    try:
        profile = await app_state.idp.fetch_profile(token)
    except InvalidToken as e:
        raise ToolError(f"Access token is no longer valid: {e.message}")
    except UpstreamUnavailable as e:
        raise ToolError(f"Identity provider unavailable: {e.message}")

    logger.info("[TOOL] get-user-info invoked")
    identity = getattr(request.state, "identity", None)
    return json.dumps(
        {
            "user": identity.to_dict() if identity else None,
            "token_claims": {
                key: identity.claims.get(key)
                for key in ("sub", "oid", "iss", "aud", "iat", "exp", "scp")
                if identity is not None and key in identity.claims
            },
            "profile": profile,
            "security": "Public Client (no client secret)",
        },
        indent=2,
    )


_OPERATIONS = {
    "add": lambda a, b: a + b,
    "subtract": lambda a, b: a - b,
    "multiply": lambda a, b: a * b,
    "divide": lambda a, b: a / b,
}


@mcp.tool(name="calculate", description="Performs a mathematical calculation")
async def calculate(
    operation: Literal["add", "subtract", "multiply", "divide"],
    a: Number,
    b: Number,
    ctx: Context,
) -> str:
    """Apply operation to a and b.

    Args:
        operation: The mathematical operation to perform
        a: First number
        b: Second number
    """
    if operation == "divide" and b == 0:
        raise ToolError("Cannot divide by zero")
    try:
        result = _OPERATIONS[operation](a, b)
    except ArithmeticError as e:
        raise ToolError(f"Calculation failed: {e}")

    logger.info(f"[TOOL] calculate invoked: {operation}")
    return f"Result: {a} {operation} {b} = {result}\n\nCalculated for {_caller(ctx)}"
