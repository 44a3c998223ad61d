"""Streamable HTTP session routing for the MCP endpoint.

Every MCP session owns one ``StreamableHTTPServerTransport`` and one MCP
server instance (with its own tool layer and upstream client). The
:class:`SessionManager` is an ASGI app that routes each request at ``/mcp``
to the right session by its ``mcp-session-id`` header:

- GET/POST for a live session     -> forwarded to that session's transport
- GET for an unknown session      -> 400
- POST without a live session     -> new session, then forwarded
- DELETE with a session id        -> session closed, always 200
- anything else                   -> 405

Server loops run inside the manager's task group, so ``run()`` must be
entered (normally from the application lifespan) before requests arrive.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

_SESSION_HEADER_BYTES = MCP_SESSION_ID_HEADER.lower().encode()


def _without_session_header(scope: Scope) -> Scope:
    headers = [(key, value) for key, value in scope["headers"] if key.lower() != _SESSION_HEADER_BYTES]
    return {**scope, "headers": headers}


class Session:
    """One live MCP session: its transport, creation time and close hook.

    The hook only tells the owner which entry to drop; it never touches
    the transport.
    """

    def __init__(self, session_id: str, transport: Any, on_close: Callable[[str], None]):
        self.session_id = session_id
        self.transport = transport
        self.created_at = time.time()
        # POSTs on one session are handled one at a time
        self.lock = anyio.Lock()
        self._on_close = on_close
        self._closed = False
        self.cancel_scope: Optional[anyio.CancelScope] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_closed(self) -> None:
        if not self._closed:
            self._closed = True
            self._on_close(self.session_id)

    async def close(self) -> None:
        if self._closed:
            return
        self.mark_closed()
        try:
            await self.transport.terminate()
        finally:
            if self.cancel_scope is not None:
                self.cancel_scope.cancel()


class SessionManager:
    """Owns the session-id -> :class:`Session` map for the MCP endpoint."""

    def __init__(
        self,
        server_factory: Callable[[], Any],
        *,
        max_sessions: int = 0,
        json_response: bool = False,
        transport_factory: Optional[Callable[[str], Any]] = None,
    ):
        """
        Args:
            server_factory: Returns a new low-level MCP server per session.
            max_sessions: Cap on live sessions; 0 means unbounded.
            json_response: Answer POSTs with JSON instead of SSE streams.
            transport_factory: Builds a transport for a session id
                (defaults to ``StreamableHTTPServerTransport``).
        """
        self._server_factory = server_factory
        self._max_sessions = max_sessions
        self._json_response = json_response
        self._transport_factory = transport_factory or self._default_transport
        self._sessions: Dict[str, Session] = {}
        self._task_group: Optional[TaskGroup] = None

    def _default_transport(self, session_id: str) -> StreamableHTTPServerTransport:
        return StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self._json_response,
        )

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def _discard(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.info(f"[SESSION] Closed {session_id} ({len(self._sessions)} active)")

    @asynccontextmanager
    async def run(self):
        """Hold the task group that session server loops run in."""
        if self._task_group is not None:
            raise RuntimeError("SessionManager.run() is already active")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield self
            finally:
                for session in list(self._sessions.values()):
                    await session.close()
                tg.cancel_scope.cancel()
                self._task_group = None

    async def close_session(self, session_id: str) -> None:
        """Close a session if it exists. Unknown ids are not an error."""
        session = self._sessions.get(session_id)
        if session is not None:
            await session.close()
        self._discard(session_id)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        method = request.method
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        session = self.get(session_id)

        if session is not None and method in ("GET", "POST"):
            await self._forward(session, method, scope, receive, send)
            return

        if method == "GET":
            response = JSONResponse({"error": "Session not found"}, status_code=400)
        elif method == "POST":
            await self._create_session(scope, receive, send)
            return
        elif method == "DELETE" and session_id:
            await self.close_session(session_id)
            response = Response(status_code=200)
        else:
            response = Response(status_code=405, headers={"Allow": "GET, POST, DELETE"})
        await response(scope, receive, send)

    async def _forward(self, session: Session, method: str, scope: Scope, receive: Receive, send: Send) -> None:
        if method == "GET":
            # Long-lived server->client stream; must not hold the POST lock
            await session.transport.handle_request(scope, receive, send)
            return
        async with session.lock:
            await session.transport.handle_request(scope, receive, send)

    async def _create_session(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("SessionManager.run() must be active to create sessions")
        if self._max_sessions and len(self._sessions) >= self._max_sessions:
            logger.warning(f"[SESSION] Refused new session: limit of {self._max_sessions} reached")
            response = JSONResponse({"error": "too_many_sessions"}, status_code=503)
            await response(scope, receive, send)
            return

        session_id = uuid4().hex
        session = Session(session_id, self._transport_factory(session_id), on_close=self._discard)
        await self._task_group.start(self._run_server, session, self._server_factory())

        async def send_publishing_session(message: Message) -> None:
            if message["type"] == "http.response.start" and message["status"] < 400:
                headers = MutableHeaders(scope=message)
                if MCP_SESSION_ID_HEADER not in headers:
                    headers.append(MCP_SESSION_ID_HEADER, session_id)
                self._sessions[session_id] = session
                logger.info(f"[SESSION] Created {session_id} ({len(self._sessions)} active)")
            await send(message)

        try:
            async with session.lock:
                await session.transport.handle_request(_without_session_header(scope), receive, send_publishing_session)
        finally:
            if session_id not in self._sessions and not session.closed:
                # The opening request was refused, failed or cancelled; nothing was published
                logger.info(f"[SESSION] Discarding unpublished session {session_id}")
                with anyio.CancelScope(shield=True):
                    await session.close()

    async def _run_server(
        self,
        session: Session,
        server: Any,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        with anyio.CancelScope() as cancel_scope:
            session.cancel_scope = cancel_scope
            try:
                async with session.transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await server.run(read_stream, write_stream, server.create_initialization_options())
            except Exception:
                logger.exception(f"[SESSION] Server loop for {session.session_id} crashed")
            finally:
                session.mark_closed()
