"""Session-keyed registry of MCP Streamable HTTP transports.

Each MCP session is an McpSession handle wrapping one SDK
StreamableHTTPServerTransport, served by the protocol server in the
registry's task group. A handle goes Active -> Closed exactly once.

The registry only becomes aware of a session once its "initialize" request
has been answered successfully. Requests naming a missing, unknown or closed
session are rejected; they never open a new session.
"""

import enum
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

import anyio
from anyio.abc import TaskGroup
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from pydantic import ValidationError
from starlette.types import Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

# JSON-RPC server error used for transport-level session problems
SESSION_ERROR_CODE = -32000


class SessionState(enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class SessionError(Exception):
    status_code = 400
    code = SESSION_ERROR_CODE

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MissingSession(SessionError):
    def __init__(self):
        super().__init__("Bad Request: No valid session ID provided")


class UnknownSession(SessionError):
    status_code = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Session not found")


class SessionAlreadyInitialized(SessionError):
    def __init__(self):
        super().__init__("Bad Request: Session already initialized")


class InvalidInitialize(SessionError):
    code = types.INVALID_PARAMS

    def __init__(self, detail: str):
        super().__init__(f"Invalid initialize request: {detail}")


def is_initialize_request(message: Any) -> bool:
    return isinstance(message, dict) and message.get("method") == "initialize" and "id" in message


def check_initialize_request(message: dict) -> None:
    """Reject a malformed initialize before any session is created for it."""
    try:
        types.JSONRPCRequest.model_validate(message)
        types.InitializeRequestParams.model_validate(message.get("params"))
    except ValidationError as e:
        raise InvalidInitialize(e.errors()[0]["msg"])


class McpSession:
    """One client's transport handle."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=True,
        )
        self.state = SessionState.ACTIVE
        self._cancel_scope: Optional[anyio.CancelScope] = None
        self._close_callbacks: list[Callable[["McpSession"], None]] = []

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def on_close(self, callback: Callable[["McpSession"], None]) -> None:
        self._close_callbacks.append(callback)

    async def serve(self, server: Server, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        """Run the protocol server over this session's transport until it closes."""
        with anyio.CancelScope() as cancel_scope:
            self._cancel_scope = cancel_scope
            try:
                async with self.transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await server.run(read_stream, write_stream, server.create_initialization_options())
            except Exception:
                logger.exception(f"[SESSION] Session {self.session_id} crashed")
        await self.close()

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> Optional[int]:
        """Hand one HTTP exchange to the transport; returns the response status."""
        if not self.active:
            raise UnknownSession(self.session_id)

        status = None

        async def recording_send(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        await self.transport.handle_request(scope, receive, recording_send)
        return status

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        try:
            await self.transport.terminate()
        finally:
            if self._cancel_scope is not None:
                self._cancel_scope.cancel()
            for callback in self._close_callbacks:
                callback(self)
            self._close_callbacks.clear()
        logger.info(f"[SESSION] Session closed: {self.session_id}")


class SessionRegistry:
    """session ID -> active McpSession."""

    def __init__(self, server: Server):
        self.server = server
        self._sessions: dict[str, McpSession] = {}
        self._task_group: Optional[TaskGroup] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionRegistry"]:
        """Own the task group the per-session protocol servers run in."""
        async with anyio.create_task_group() as task_group:
            self._task_group = task_group
            try:
                yield self
            finally:
                await self.close_all()
                task_group.cancel_scope.cancel()
                self._task_group = None

    async def start_session(self) -> McpSession:
        """Create a transport and start serving it. Not routable until activated."""
        if self._task_group is None:
            raise RuntimeError("SessionRegistry.run() is not active")
        session_id = uuid.uuid4().hex
        while session_id in self._sessions:
            session_id = uuid.uuid4().hex
        session = McpSession(session_id)
        await self._task_group.start(session.serve, self.server)
        return session

    def activate(self, session: McpSession) -> None:
        session.on_close(self._forget)
        self._sessions[session.session_id] = session
        logger.info(f"[SESSION] New session: {session.session_id} (active: {len(self._sessions)})")

    def _forget(self, session: McpSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]

    def get(self, session_id: Optional[str]) -> McpSession:
        """Look up an active session or raise MissingSession / UnknownSession."""
        if not session_id:
            raise MissingSession()
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            raise UnknownSession(session_id)
        return session

    async def dispatch(self, session_id: Optional[str], message: Any,
                       scope: Scope, receive: Receive, send: Send) -> None:
        """Route one POSTed message to its session, creating one only for initialize."""
        if not session_id:
            if not is_initialize_request(message):
                raise MissingSession()
            check_initialize_request(message)
            session = await self.start_session()
            try:
                status = await session.handle(scope, receive, send)
            except Exception:
                await session.close()
                raise
            if status == 200:
                self.activate(session)
            else:
                logger.info(f"[SESSION] Initialize failed with status {status}, discarding {session.session_id}")
                await session.close()
            return

        session = self.get(session_id)
        if is_initialize_request(message):
            raise SessionAlreadyInitialized()
        await session.handle(scope, receive, send)

    async def terminate(self, session_id: Optional[str]) -> None:
        session = self.get(session_id)
        await session.close()

    async def close_all(self) -> None:
        """Close every open session (process shutdown)."""
        for session in list(self._sessions.values()):
            try:
                await session.close()
            except Exception:
                logger.exception(f"[SESSION] Error closing session {session.session_id}")
        self._sessions.clear()
        logger.info("[SESSION] All sessions closed")
