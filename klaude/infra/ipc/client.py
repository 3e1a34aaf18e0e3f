"""Asyncio Unix socket client for talking to a wrapper instance.

One connection carries exactly one request and one response. The exchange is
settled exactly once: by a parsed response, by the timeout (resolved as an
``E_TIMEOUT`` response), or by a transport failure (raised as
``IpcTransportError``). The socket is closed on every path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from klaude.errors import IpcTransportError
from klaude.infra.ipc.protocol import (
    CHECKOUT,
    E_INVALID_RESPONSE,
    E_NO_RESPONSE,
    E_TIMEOUT,
    INTERRUPT,
    MESSAGE,
    PING,
    START_AGENT,
    STATUS,
    InstanceRequest,
    InstanceResponse,
    decode_response,
    encode,
    make_error,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 15000
READ_LIMIT = 4 * 1024 * 1024


def _parse(raw: bytes) -> InstanceResponse:
    try:
        return decode_response(raw)
    except (ValueError, UnicodeDecodeError) as e:
        return make_error(E_INVALID_RESPONSE, f"Invalid response from instance: {e}")


async def _exchange(socket_path: str, request: InstanceRequest) -> InstanceResponse:
    try:
        reader, writer = await asyncio.open_unix_connection(socket_path, limit=READ_LIMIT)
    except OSError as e:
        raise IpcTransportError(f"Cannot connect to instance socket {socket_path}: {e}") from e

    try:
        writer.write(encode(request))
        await writer.drain()

        while True:
            line = await reader.readline()
            if not line:
                return make_error(E_NO_RESPONSE, "Instance closed the connection without responding")
            if not line.endswith(b"\n"):
                # Peer closed mid-line: whatever is buffered is the final message.
                return _parse(line)
            if line.strip():
                return _parse(line)
    except (ConnectionError, ValueError) as e:
        raise IpcTransportError(f"Socket error talking to {socket_path}: {e}") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            logger.debug("Error closing connection to %s", socket_path, exc_info=True)


async def send_request(
    socket_path: str,
    request: InstanceRequest,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> InstanceResponse:
    """Send one request and return its response.

    A timeout resolves with an ``E_TIMEOUT`` error response; transport failures
    raise ``IpcTransportError``.
    """
    logger.debug("-> %s %s", socket_path, request.action)
    try:
        response = await asyncio.wait_for(_exchange(socket_path, request), timeout_ms / 1000)
    except asyncio.TimeoutError:
        return make_error(
            E_TIMEOUT, f"Timed out after {timeout_ms}ms waiting for instance response"
        )
    logger.debug("<- %s ok=%s", request.action, response.ok)
    return response


async def _call(
    socket_path: str, action: str, payload: dict[str, Any] | None, timeout_ms: int
) -> InstanceResponse:
    return await send_request(socket_path, InstanceRequest(action, payload or {}), timeout_ms)


async def ping_instance(socket_path: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> InstanceResponse:
    return await _call(socket_path, PING, None, timeout_ms)


async def get_instance_status(
    socket_path: str, timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> InstanceResponse:
    return await _call(socket_path, STATUS, None, timeout_ms)


async def start_agent_session(
    socket_path: str, payload: dict[str, Any], timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> InstanceResponse:
    return await _call(socket_path, START_AGENT, payload, timeout_ms)


async def request_checkout(
    socket_path: str, payload: dict[str, Any], timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> InstanceResponse:
    return await _call(socket_path, CHECKOUT, payload, timeout_ms)


async def send_agent_message(
    socket_path: str, payload: dict[str, Any], timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> InstanceResponse:
    return await _call(socket_path, MESSAGE, payload, timeout_ms)


async def interrupt_agent(
    socket_path: str, payload: dict[str, Any], timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> InstanceResponse:
    return await _call(socket_path, INTERRUPT, payload, timeout_ms)
