"""Streamable HTTP endpoints for MCP (POST / GET / DELETE on /mcp and /).

- POST carries one JSON-RPC message. The bearer gate runs first for methods
  the MethodAuthPolicy marks as protected, then the session registry hands
  the request to that session's SDK transport.
- GET opens the server-push stream (text/event-stream) of an active session.
- DELETE terminates a session.

Sessions are named by the Mcp-Session-Id header.
"""

import json
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response
from mcp import types
from starlette.requests import Request
from starlette.types import Message, Receive, Scope, Send

from oauth.errors import AuthError, UpstreamUnavailable
from oauth.middleware import extract_bearer_token, unauthorized_response, upstream_unavailable_response
from sessions import SessionError

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"

# Router for MCP transport endpoints
router = APIRouter(tags=["mcp"])


def jsonrpc_error(code: int, message: str, request_id=None) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": types.ErrorData(code=code, message=message).model_dump(exclude_none=True),
    }


def session_error_response(error: SessionError, request_id=None) -> JSONResponse:
    return JSONResponse(jsonrpc_error(error.code, error.message, request_id), status_code=error.status_code)


def _replay(body: bytes, receive: Receive) -> Receive:
    """Receive callable that yields the already-read body once, then defers."""
    delivered = False

    async def replay() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class StreamableHTTPEndpoint:
    """ASGI endpoint in front of the session registry."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if request.method == "POST":
            response = await self.handle_post(request, scope, receive, send)
        elif request.method == "DELETE":
            response = await self.handle_delete(request)
        else:
            response = await self.handle_get(request, scope, receive, send)
        if response is not None:
            await response(scope, receive, send)

    async def handle_post(self, request: Request, scope: Scope, receive: Receive, send: Send):
        """Main MCP JSON-RPC endpoint."""
        app_state = request.app.state
        session_id = request.headers.get(SESSION_HEADER)

        body = await request.body()
        try:
            message = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return JSONResponse(jsonrpc_error(types.PARSE_ERROR, "Parse error"), status_code=400)
        if not isinstance(message, dict):
            return JSONResponse(
                jsonrpc_error(types.INVALID_REQUEST, "Batch requests are not supported"), status_code=400
            )

        method = message.get("method")
        logger.info(f"[MCP] POST - Session ID: {session_id or 'none'}, Method: {method or 'unknown'}")

        if app_state.auth_policy.requires_auth(method):
            authorization = request.headers.get("Authorization")
            try:
                identity = await app_state.authenticator.authenticate(authorization)
            except AuthError as e:
                logger.info(f"[AUTH] Request '{method}' rejected: {e.message}")
                return unauthorized_response(app_state.config, e)
            except UpstreamUnavailable as e:
                logger.warning(f"[AUTH] Request '{method}' not verified, identity provider unavailable: {e.message}")
                return upstream_unavailable_response(e)
            # Shared with the transport's own Request through scope["state"]
            request.state.identity = identity
            request.state.access_token = extract_bearer_token(authorization)

        try:
            await app_state.sessions.dispatch(session_id, message, scope, _replay(body, receive), send)
        except SessionError as e:
            logger.info(f"[MCP] Rejected: {e.message}")
            return session_error_response(e, message.get("id"))
        return None

    async def handle_get(self, request: Request, scope: Scope, receive: Receive, send: Send):
        """Server-push stream for an existing session."""
        session_id = request.headers.get(SESSION_HEADER)
        logger.info(f"[MCP] GET - Session ID: {session_id or 'none'}")

        try:
            session = request.app.state.sessions.get(session_id)
        except SessionError as e:
            return session_error_response(e)
        await session.handle(scope, receive, send)
        return None

    async def handle_delete(self, request: Request):
        """Explicit session termination."""
        session_id = request.headers.get(SESSION_HEADER)
        logger.info(f"[MCP] DELETE - Session ID: {session_id or 'none'}")

        try:
            await request.app.state.sessions.terminate(session_id)
        except SessionError as e:
            return session_error_response(e)
        return Response(status_code=200)


endpoint = StreamableHTTPEndpoint()

# Register routes for /mcp, and the root path for compatibility
for _path in ("/mcp", "/"):
    router.add_route(_path, endpoint, methods=["GET", "POST", "DELETE"])
