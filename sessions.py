"""Streamable HTTP session registry for the /mcp endpoint.

Each MCP session gets its own StreamableHTTPServerTransport, with the MCP
server loop running over it in the registry's task group. The registry maps
the Mcp-Session-Id header to that binding:

- POST initialize without a known id  -> new session
- POST with a known id               -> routed to the session transport
- POST with an unknown id            -> 404, the client must re-initialize
- GET (SSE stream) with a known id   -> routed, otherwise 400
- DELETE                             -> session closed, always 200

A session is also evicted when its server loop ends (transport closed,
client gone) or when it has been idle longer than the idle timeout. A
session with an open GET stream is never idle.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60  # seconds


@dataclass
class Session:
    id: str
    transport: StreamableHTTPServerTransport
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    open_streams: int = 0


def is_initialize_request(body: bytes) -> bool:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return False
    return isinstance(payload, dict) and payload.get("method") == "initialize"


def rpc_error(status_code: int, code: int, message: str) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
    )


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Receive callable that yields an already-read body once, then defers."""
    sent = False

    async def wrapped() -> dict:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return wrapped


def _without_session_header(scope: Scope) -> Scope:
    header = MCP_SESSION_ID_HEADER.encode()
    scope = dict(scope)
    scope["headers"] = [(k, v) for k, v in scope["headers"] if k.lower() != header]
    return scope


class SessionRegistry:
    """ASGI app owning the live MCP sessions.

    Must be started with `async with registry.run():` (app lifespan) before
    it can create sessions.
    """

    def __init__(
        self,
        server: Server,
        json_response: bool = False,
        idle_timeout: float = 0,
        clock: Callable[[], float] = time.time,
    ):
        self.server = server
        self.json_response = json_response
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: dict[str, Session] = {}
        self._creation_lock = anyio.Lock()
        self._task_group: Optional[TaskGroup] = None

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    @asynccontextmanager
    async def run(self):
        """Run the task group that hosts the per-session server loops."""
        if self._task_group is not None:
            raise RuntimeError("Session registry is already running")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            if self.idle_timeout > 0:
                tg.start_soon(self._sweep_loop)
            logger.info("[SESSION] Session registry started")
            try:
                yield self
            finally:
                await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.info("[SESSION] Session registry stopped")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if request.method == "POST":
            await self._handle_post(request, session_id, scope, receive, send)
        elif request.method == "GET":
            session = self._sessions.get(session_id) if session_id else None
            if session is None:
                response = rpc_error(400, -32000, "Bad Request: invalid or missing session ID")
                await response(scope, receive, send)
                return
            await self._dispatch(session, scope, receive, send)
        elif request.method == "DELETE":
            if session_id:
                await self.terminate(session_id)
            await Response(status_code=200)(scope, receive, send)
        else:
            response = rpc_error(405, -32000, "Method Not Allowed")
            response.headers["Allow"] = "GET, POST, DELETE"
            await response(scope, receive, send)

    async def _handle_post(
        self,
        request: Request,
        session_id: Optional[str],
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        body = await request.body()
        receive = _replay_body(body, receive)

        session = self._sessions.get(session_id) if session_id else None
        if session is not None:
            await self._dispatch(session, scope, receive, send)
            return

        if not is_initialize_request(body):
            if session_id:
                logger.info("[SESSION] Unknown session id on non-initialize request")
                response = rpc_error(404, -32001, "Session not found")
            else:
                response = rpc_error(400, -32000, "Bad Request: No valid session ID provided")
            await response(scope, receive, send)
            return

        if session_id:
            # Stale id from a previous session: let the new transport mint one.
            scope = _without_session_header(scope)

        async with self._creation_lock:
            session = await self._create_session()
        await self._dispatch(session, scope, receive, send)

    async def _create_session(self) -> Session:
        if self._task_group is None:
            raise RuntimeError("Session registry is not running")

        session_id = uuid4().hex
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self.json_response,
        )
        now = self.clock()
        session = Session(id=session_id, transport=transport, created_at=now, last_seen=now)
        self._sessions[session_id] = session
        await self._task_group.start(self._run_session, session)
        logger.info(f"[SESSION] Created session {session_id} ({len(self._sessions)} active)")
        return session

    async def _run_session(self, session: Session, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        try:
            async with session.transport.connect() as (read_stream, write_stream):
                task_status.started()
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
        except Exception:
            logger.exception(f"[SESSION] Server loop for session {session.id} crashed")
        finally:
            self._evict(session)

    async def _dispatch(self, session: Session, scope: Scope, receive: Receive, send: Send) -> None:
        session.last_seen = self.clock()
        streaming = scope["method"] == "GET"
        if streaming:
            session.open_streams += 1
        response_started = False

        async def tracking_send(message: dict) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await session.transport.handle_request(scope, receive, tracking_send)
        except Exception:
            logger.exception(f"[SESSION] Error handling request for session {session.id}")
            if not response_started:
                response = rpc_error(500, -32603, "Internal server error")
                await response(scope, receive, send)
        finally:
            if streaming:
                session.open_streams -= 1
                session.last_seen = self.clock()

    def _evict(self, session: Session) -> None:
        # Only drop the entry if it is still bound to this session's transport.
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            logger.info(f"[SESSION] Session {session.id} closed ({len(self._sessions)} active)")

    async def terminate(self, session_id: str) -> bool:
        """Close and evict a session. Returns False if it was not registered."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.transport.terminate()
        logger.info(f"[SESSION] Session {session_id} terminated ({len(self._sessions)} active)")
        return True

    async def sweep(self) -> list[str]:
        """Terminate sessions idle longer than idle_timeout. Returns their ids.

        Sessions holding an open GET stream are skipped.
        """
        if self.idle_timeout <= 0:
            return []
        cutoff = self.clock() - self.idle_timeout
        idle = [
            s.id for s in self._sessions.values()
            if s.open_streams == 0 and s.last_seen < cutoff
        ]
        for session_id in idle:
            await self.terminate(session_id)
        if idle:
            logger.info(f"[SESSION] Swept {len(idle)} idle session(s)")
        return idle

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.terminate(session_id)

    async def _sweep_loop(self) -> None:
        interval = min(self.idle_timeout, SWEEP_INTERVAL)
        while True:
            await anyio.sleep(interval)
            await self.sweep()
