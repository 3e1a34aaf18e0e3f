"""Tests for the instance socket protocol, server and client."""

from __future__ import annotations

import asyncio
import os
import shutil
import stat
import tempfile

import pytest
import pytest_asyncio

from klaude.errors import IpcTransportError, StateViolationError
from klaude.infra.ipc import protocol
from klaude.infra.ipc.client import ping_instance, send_request, start_agent_session
from klaude.infra.ipc.protocol import InstanceRequest
from klaude.infra.ipc.server import InstanceServer


@pytest.fixture
def sock_dir():
    # Short path: AF_UNIX paths are limited to ~104 bytes.
    path = tempfile.mkdtemp(prefix="kl-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


class StubRouter:
    def __init__(self):
        self.calls = []

    def has_action(self, action):
        return action in (protocol.PING, protocol.START_AGENT, "explode")

    async def dispatch(self, action, payload):
        self.calls.append((action, payload))
        if action == protocol.PING:
            return {"pong": True}
        if action == "explode":
            raise RuntimeError("boom")
        raise StateViolationError("Agent busy", code="E_AGENT_NOT_RUNNING")


@pytest_asyncio.fixture
async def server(sock_dir):
    srv = InstanceServer(os.path.join(sock_dir, "inst.sock"), StubRouter())
    await srv.start()
    yield srv
    await srv.stop()


async def _raw_server(path, handler):
    return await asyncio.start_unix_server(handler, path=path)


class TestProtocol:
    def test_encode_is_one_line(self):
        data = protocol.encode(InstanceRequest(protocol.PING))
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1

    def test_decode_request_defaults_payload(self):
        request = protocol.decode_request(b'{"action": "ping"}')
        assert request.payload == {}

    def test_decode_request_requires_action(self):
        with pytest.raises(ValueError, match="action"):
            protocol.decode_request(b'{"payload": {}}')

    def test_decode_response_error(self):
        response = protocol.decode_response(b'{"ok": false, "error": {"code": "E_X", "message": "m"}}')
        assert not response.ok
        assert response.error_code == "E_X"
        assert response.error_message == "m"

    def test_decode_response_requires_ok(self):
        with pytest.raises(ValueError):
            protocol.decode_response(b'{"result": 1}')


class TestServerHandleLine:
    @pytest.mark.asyncio
    async def test_invalid_json(self):
        srv = InstanceServer("/unused", StubRouter())
        response = await srv.handle_line(b"{nope")
        assert response.error_code == protocol.E_INVALID_JSON

    @pytest.mark.asyncio
    async def test_missing_action(self):
        srv = InstanceServer("/unused", StubRouter())
        response = await srv.handle_line(b'{"payload": {}}')
        assert response.error_code == protocol.E_INVALID_PAYLOAD

    @pytest.mark.asyncio
    async def test_unsupported_action(self):
        router = StubRouter()
        srv = InstanceServer("/unused", router)
        response = await srv.handle_line(b'{"action": "dance"}')
        assert response.error_code == protocol.E_UNSUPPORTED_ACTION
        assert router.calls == []

    @pytest.mark.asyncio
    async def test_klaude_error_keeps_code(self):
        srv = InstanceServer("/unused", StubRouter())
        response = await srv.handle_line(b'{"action": "start-agent", "payload": {"x": 1}}')
        assert response.error_code == "E_AGENT_NOT_RUNNING"
        assert response.error_message == "Agent busy"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self):
        srv = InstanceServer("/unused", StubRouter())
        response = await srv.handle_line(b'{"action": "explode"}')
        assert response.error_code == protocol.E_INTERNAL
        assert "boom" in response.error_message


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_ping(self, server):
        response = await ping_instance(server.socket_path, timeout_ms=2000)
        assert response.ok
        assert response.result == {"pong": True}

    @pytest.mark.asyncio
    async def test_error_response(self, server):
        response = await start_agent_session(server.socket_path, {"agentType": "planner"}, 2000)
        assert not response.ok
        assert response.error_code == "E_AGENT_NOT_RUNNING"

    @pytest.mark.asyncio
    async def test_socket_is_private(self, server):
        mode = stat.S_IMODE(os.stat(server.socket_path).st_mode)
        assert mode == 0o600

    @pytest.mark.asyncio
    async def test_stop_removes_socket(self, sock_dir):
        srv = InstanceServer(os.path.join(sock_dir, "gone.sock"), StubRouter())
        await srv.start()
        await srv.stop()
        assert not os.path.exists(srv.socket_path)

    @pytest.mark.asyncio
    async def test_stale_socket_file_replaced(self, sock_dir):
        path = os.path.join(sock_dir, "stale.sock")
        open(path, "w").close()
        srv = InstanceServer(path, StubRouter())
        await srv.start()
        try:
            assert (await ping_instance(path, 2000)).ok
        finally:
            await srv.stop()


class TestClientFailures:
    @pytest.mark.asyncio
    async def test_timeout_resolves_as_error(self, sock_dir):
        path = os.path.join(sock_dir, "slow.sock")

        release = asyncio.Event()

        async def never_answer(reader, writer):
            await reader.readline()
            await release.wait()
            writer.close()

        srv = await _raw_server(path, never_answer)
        try:
            response = await send_request(path, InstanceRequest(protocol.PING), timeout_ms=50)
        finally:
            release.set()
            srv.close()
        assert response.error_code == protocol.E_TIMEOUT
        assert "50ms" in response.error_message

    @pytest.mark.asyncio
    async def test_close_without_reply(self, sock_dir):
        path = os.path.join(sock_dir, "mute.sock")

        async def hang_up(reader, writer):
            await reader.readline()
            writer.close()

        srv = await _raw_server(path, hang_up)
        try:
            response = await send_request(path, InstanceRequest(protocol.PING), timeout_ms=2000)
        finally:
            srv.close()
        assert response.error_code == protocol.E_NO_RESPONSE

    @pytest.mark.asyncio
    async def test_garbage_reply(self, sock_dir):
        path = os.path.join(sock_dir, "junk.sock")

        async def garbage(reader, writer):
            await reader.readline()
            writer.write(b"this is not json\n")
            await writer.drain()
            writer.close()

        srv = await _raw_server(path, garbage)
        try:
            response = await send_request(path, InstanceRequest(protocol.PING), timeout_ms=2000)
        finally:
            srv.close()
        assert response.error_code == protocol.E_INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_unterminated_final_line_is_parsed(self, sock_dir):
        path = os.path.join(sock_dir, "partial.sock")

        async def no_newline(reader, writer):
            await reader.readline()
            writer.write(b'\n{"ok": true, "result": 7}')
            await writer.drain()
            writer.close()

        srv = await _raw_server(path, no_newline)
        try:
            response = await send_request(path, InstanceRequest(protocol.PING), timeout_ms=2000)
        finally:
            srv.close()
        assert response.ok
        assert response.result == 7

    @pytest.mark.asyncio
    async def test_missing_socket_raises_transport_error(self, sock_dir):
        with pytest.raises(IpcTransportError) as exc:
            await send_request(os.path.join(sock_dir, "nobody.sock"), InstanceRequest(protocol.PING), 500)
        assert exc.value.code == "E_TRANSPORT"
