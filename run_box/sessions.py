"""Session router — binds MCP sessions to their own transports over HTTP."""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from http import HTTPStatus
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp import types
from mcp.server.fastmcp import FastMCP
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

log = logging.getLogger(__name__)

# JSON-RPC error code for transport-level failures (unknown session, draining)
SESSION_ERROR = -32000


def error_response(status: HTTPStatus, code: int, message: str) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status,
    )


def is_initialize_request(body: bytes) -> bool:
    """Return True if ``body`` is a JSON-RPC ``initialize`` request."""
    try:
        message = types.JSONRPCMessage.model_validate_json(body)
    except ValidationError:
        return False
    return isinstance(message.root, types.JSONRPCRequest) and message.root.method == "initialize"


@dataclass
class Session:
    """One connected client and the transport bound to it."""

    id: str
    transport: StreamableHTTPServerTransport = field(repr=False)
    created_at: float = field(default_factory=time.time)


class SessionRouter:
    """ASGI app that routes ``/mcp`` requests to per-session transports.

    A session is created by an ``initialize`` request carrying no session
    header.  Each session gets its own transport and its own MCP server
    loop, started in the router's task group; the session is dropped when
    that loop ends.  ``run()`` must be entered before requests are served.
    """

    def __init__(self, server: FastMCP, *, json_response: bool = False) -> None:
        self._server = server._mcp_server
        self._json_response = json_response
        self._sessions: dict[str, Session] = {}
        self._task_group: TaskGroup | None = None
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield
            finally:
                self._task_group = None
                tg.cancel_scope.cancel()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def begin_shutdown(self) -> None:
        """Reject every further request with 503."""
        self._shutting_down = True

    def session_count(self) -> int:
        return len(self._sessions)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def close_all(self) -> None:
        """Terminate every live session and forget them."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            try:
                await session.transport.terminate()
            except Exception:
                log.exception("Failed to close session %s", session.id)
        if sessions:
            log.info("Closed %d session(s)", len(sessions))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self._dispatch(scope, receive, tracking_send)
        except Exception:
            log.exception("Error handling MCP request")
            if not response_started:
                response = error_response(
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    types.INTERNAL_ERROR,
                    "Internal server error",
                )
                await response(scope, receive, send)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _dispatch(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._shutting_down:
            response = error_response(
                HTTPStatus.SERVICE_UNAVAILABLE,
                SESSION_ERROR,
                "Service Unavailable: server is shutting down",
            )
            await response(scope, receive, send)
            return

        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if request.method == "POST":
            await self._handle_post(request, session_id, scope, send)
            return

        if request.method in ("GET", "DELETE"):
            if not session_id:
                response = error_response(
                    HTTPStatus.BAD_REQUEST,
                    types.INVALID_REQUEST,
                    "Missing Mcp-Session-Id header",
                )
                await response(scope, receive, send)
                return
            session = self._sessions.get(session_id)
            if session is None:
                await self._session_not_found(scope, receive, send)
                return
            await session.transport.handle_request(scope, receive, send)
            return

        response = error_response(
            HTTPStatus.METHOD_NOT_ALLOWED, SESSION_ERROR, "Method not allowed",
        )
        await response(scope, receive, send)

    async def _handle_post(
        self,
        request: Request,
        session_id: str | None,
        scope: Scope,
        send: Send,
    ) -> None:
        receive = request.receive

        if session_id:
            session = self._sessions.get(session_id)
            if session is None:
                await self._session_not_found(scope, receive, send)
                return
            await session.transport.handle_request(scope, receive, send)
            return

        body = await request.body()
        if not is_initialize_request(body):
            response = error_response(
                HTTPStatus.BAD_REQUEST,
                types.INVALID_REQUEST,
                "Bad Request: missing session ID or not an initialize request",
            )
            await response(scope, receive, send)
            return

        session = await self._open_session()
        accepted = False

        async def binding_send(message: Message) -> None:
            nonlocal accepted
            if message["type"] == "http.response.start" and 200 <= message["status"] < 300:
                # Bind before the client can learn the session id
                accepted = True
                self._bind(session)
            await send(message)

        try:
            await session.transport.handle_request(
                scope, _replay_body(body, receive), binding_send,
            )
        finally:
            if not accepted:
                await self._discard(session)

    @staticmethod
    async def _session_not_found(scope: Scope, receive: Receive, send: Send) -> None:
        response = error_response(HTTPStatus.NOT_FOUND, SESSION_ERROR, "Session not found")
        await response(scope, receive, send)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def _open_session(self) -> Session:
        """Start a transport and server loop for a handshake not yet accepted."""
        if self._task_group is None:
            raise RuntimeError("SessionRouter.run() has not been entered")

        session_id = uuid4().hex
        session = Session(
            id=session_id,
            transport=StreamableHTTPServerTransport(
                mcp_session_id=session_id,
                is_json_response_enabled=self._json_response,
            ),
        )
        await self._task_group.start(self._serve_session, session)
        return session

    def _bind(self, session: Session) -> None:
        self._sessions[session.id] = session
        log.info("Opened session %s (%d active)", session.id, len(self._sessions))

    async def _discard(self, session: Session) -> None:
        """Tear down a session whose handshake was rejected."""
        log.debug("Handshake rejected; discarding session %s", session.id)
        self._forget(session)
        try:
            await session.transport.terminate()
        except Exception:
            log.exception("Failed to close session %s", session.id)

    async def _serve_session(
        self,
        session: Session,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        async with session.transport.connect() as (read_stream, write_stream):
            task_status.started()
            try:
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                    stateless=False,
                )
            except Exception:
                log.exception("Session %s crashed", session.id)
            finally:
                self._forget(session)

    def _forget(self, session: Session) -> None:
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            log.info("Closed session %s (%d active)", session.id, len(self._sessions))


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Wrap ``receive`` so the already-consumed request body is delivered again."""
    replayed = False

    async def wrapped() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return wrapped
