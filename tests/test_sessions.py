import json
from contextlib import asynccontextmanager
from typing import Any

import anyio
import pytest

from sessions import SessionManager

SESSION_HEADER = b"mcp-session-id"


class FakeTransport:
    """Stands in for ``StreamableHTTPServerTransport``."""

    def __init__(self, session_id: str, status: int = 200, delay: float = 0.0) -> None:
        self.session_id = session_id
        self.status = status
        self.delay = delay
        self.requests: list[tuple[str, dict]] = []
        self.terminated = False
        self.active = 0
        self.max_active = 0

    @asynccontextmanager
    async def connect(self):
        yield ("read-stream", "write-stream")

    async def handle_request(self, scope, receive, send) -> None:
        self.requests.append((scope["method"], dict(scope["headers"])))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await anyio.sleep(self.delay)
            await send({
                "type": "http.response.start",
                "status": self.status,
                "headers": [(b"content-type", b"application/json")],
            })
            await send({"type": "http.response.body", "body": b"{}"})
        finally:
            self.active -= 1

    async def terminate(self) -> None:
        self.terminated = True


class BrokenTransport(FakeTransport):
    async def handle_request(self, scope, receive, send) -> None:
        self.requests.append((scope["method"], dict(scope["headers"])))
        raise OSError("connection reset")


class FakeServer:
    def __init__(self) -> None:
        self.stopped = anyio.Event()
        self.ran_with: Any = None
        self.finished = False

    def create_initialization_options(self) -> str:
        return "init-options"

    async def run(self, read_stream, write_stream, options) -> None:
        self.ran_with = (read_stream, write_stream, options)
        try:
            await self.stopped.wait()
        finally:
            self.finished = True


class Harness:
    def __init__(self, status: int = 200, delay: float = 0.0, transport_cls: type = None) -> None:
        self.status = status
        self.delay = delay
        self.transport_cls = transport_cls or FakeTransport
        self.transports: list[FakeTransport] = []
        self.servers: list[FakeServer] = []

    def transport_factory(self, session_id: str) -> FakeTransport:
        transport = self.transport_cls(session_id, self.status, self.delay)
        self.transports.append(transport)
        return transport

    def server_factory(self) -> FakeServer:
        server = FakeServer()
        self.servers.append(server)
        return server

    def manager(self, **kwargs) -> SessionManager:
        return SessionManager(self.server_factory, transport_factory=self.transport_factory, **kwargs)


def _make_scope(method: str, session_id: str = None) -> dict:
    headers = [(b"content-type", b"application/json")]
    if session_id is not None:
        headers.append((SESSION_HEADER, session_id.encode()))
    return {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": "/mcp",
        "root_path": "",
        "query_string": b"",
        "headers": headers,
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 12345),
    }


def _make_receive(body: bytes = b"{}"):
    messages = [{"type": "http.request", "body": body, "more_body": False}]

    async def receive():
        if messages:
            return messages.pop(0)
        return {"type": "http.disconnect"}

    return receive


def _make_send_collector():
    sent: list[dict] = []

    async def send(message: dict) -> None:
        sent.append(message)

    return send, sent


async def _call(manager: SessionManager, method: str, session_id: str = None) -> tuple[int, dict, bytes]:
    send, sent = _make_send_collector()
    await manager(_make_scope(method, session_id), _make_receive(), send)
    start = next(message for message in sent if message["type"] == "http.response.start")
    body = b"".join(message.get("body", b"") for message in sent if message["type"] == "http.response.body")
    return start["status"], dict(start["headers"]), body


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


@pytest.mark.asyncio
async def test_post_without_session_creates_and_publishes() -> None:
    harness = Harness()
    manager = harness.manager()

    async with manager.run():
        status, headers, _ = await _call(manager, "POST")

        session_id = headers[SESSION_HEADER].decode()
        assert status == 200
        assert manager.session_count == 1
        assert manager.get(session_id) is not None
        assert harness.transports[0].session_id == session_id
        assert harness.servers[0].ran_with == ("read-stream", "write-stream", "init-options")


@pytest.mark.asyncio
async def test_stale_session_id_starts_fresh_session() -> None:
    harness = Harness()
    manager = harness.manager()

    async with manager.run():
        status, headers, _ = await _call(manager, "POST", session_id="stale-id")

        assert status == 200
        assert headers[SESSION_HEADER] != b"stale-id"
        _, forwarded_headers = harness.transports[0].requests[0]
        assert SESSION_HEADER not in forwarded_headers
        assert manager.get("stale-id") is None


@pytest.mark.asyncio
async def test_followup_requests_reach_the_same_session() -> None:
    harness = Harness()
    manager = harness.manager()

    async with manager.run():
        _, headers, _ = await _call(manager, "POST")
        session_id = headers[SESSION_HEADER].decode()

        assert (await _call(manager, "POST", session_id))[0] == 200
        assert (await _call(manager, "GET", session_id))[0] == 200

        assert len(harness.transports) == 1
        assert [method for method, _ in harness.transports[0].requests] == ["POST", "POST", "GET"]


@pytest.mark.asyncio
async def test_get_for_unknown_session_is_rejected() -> None:
    manager = Harness().manager()

    async with manager.run():
        status, _, body = await _call(manager, "GET", session_id="missing")
        assert status == 400
        assert json.loads(body) == {"error": "Session not found"}

        status, _, _ = await _call(manager, "GET")
        assert status == 400


@pytest.mark.asyncio
async def test_delete_closes_session() -> None:
    harness = Harness()
    manager = harness.manager()

    async with manager.run():
        _, headers, _ = await _call(manager, "POST")
        session_id = headers[SESSION_HEADER].decode()

        status, _, _ = await _call(manager, "DELETE", session_id)

        assert status == 200
        assert harness.transports[0].terminated
        assert manager.session_count == 0
        assert (await _call(manager, "GET", session_id))[0] == 400


@pytest.mark.asyncio
async def test_delete_unknown_session_still_succeeds() -> None:
    manager = Harness().manager()

    async with manager.run():
        assert (await _call(manager, "DELETE", "never-existed"))[0] == 200


@pytest.mark.asyncio
async def test_other_methods_are_not_allowed() -> None:
    manager = Harness().manager()

    async with manager.run():
        status, headers, _ = await _call(manager, "DELETE")
        assert status == 405
        assert b"allow" in headers

        assert (await _call(manager, "PUT"))[0] == 405
        assert (await _call(manager, "PATCH", "whatever"))[0] == 405


@pytest.mark.asyncio
async def test_refused_opening_request_is_not_registered() -> None:
    harness = Harness(status=400)
    manager = harness.manager()

    async with manager.run():
        status, headers, _ = await _call(manager, "POST")

        assert status == 400
        assert SESSION_HEADER not in headers
        assert manager.session_count == 0
        assert harness.transports[0].terminated


@pytest.mark.asyncio
async def test_server_loop_exit_drops_session() -> None:
    harness = Harness()
    manager = harness.manager()

    async with manager.run():
        _, headers, _ = await _call(manager, "POST")
        session_id = headers[SESSION_HEADER].decode()

        harness.servers[0].stopped.set()
        await _wait_for(lambda: manager.session_count == 0)

        assert manager.get(session_id) is None


@pytest.mark.asyncio
async def test_session_limit_refuses_new_sessions() -> None:
    harness = Harness()
    manager = harness.manager(max_sessions=1)

    async with manager.run():
        assert (await _call(manager, "POST"))[0] == 200

        status, _, body = await _call(manager, "POST")

        assert status == 503
        assert json.loads(body) == {"error": "too_many_sessions"}
        assert len(harness.transports) == 1


@pytest.mark.asyncio
async def test_posts_on_one_session_are_serialized() -> None:
    harness = Harness(delay=0.05)
    manager = harness.manager()

    async with manager.run():
        _, headers, _ = await _call(manager, "POST")
        session_id = headers[SESSION_HEADER].decode()

        async with anyio.create_task_group() as tg:
            for _ in range(3):
                tg.start_soon(_call, manager, "POST", session_id)

        transport = harness.transports[0]
        assert len(transport.requests) == 4
        assert transport.max_active == 1


@pytest.mark.asyncio
async def test_shutdown_closes_every_session() -> None:
    harness = Harness()
    manager = harness.manager()

    async with manager.run():
        await _call(manager, "POST")
        await _call(manager, "POST")
        assert manager.session_count == 2

    assert manager.session_count == 0
    assert all(transport.terminated for transport in harness.transports)


@pytest.mark.asyncio
async def test_post_requires_running_manager() -> None:
    manager = Harness().manager()

    with pytest.raises(RuntimeError):
        await _call(manager, "POST")


@pytest.mark.asyncio
async def test_failed_opening_request_tears_session_down() -> None:
    harness = Harness(transport_cls=BrokenTransport)
    manager = harness.manager()

    async with manager.run():
        with pytest.raises(OSError):
            await _call(manager, "POST")

        assert manager.session_count == 0
        assert harness.transports[0].terminated
        await _wait_for(lambda: harness.servers[0].finished)


@pytest.mark.asyncio
async def test_cancelled_opening_request_tears_session_down() -> None:
    harness = Harness(delay=10)
    manager = harness.manager()

    async with manager.run():
        with anyio.move_on_after(0.05):
            await _call(manager, "POST")

        assert manager.session_count == 0
        assert harness.transports[0].terminated
        await _wait_for(lambda: harness.servers[0].finished)


@pytest.mark.asyncio
async def test_delete_stops_the_server_loop() -> None:
    harness = Harness()
    manager = harness.manager()

    async with manager.run():
        _, headers, _ = await _call(manager, "POST")

        await _call(manager, "DELETE", headers[SESSION_HEADER].decode())

        await _wait_for(lambda: harness.servers[0].finished)
