"""Asyncio Unix socket server owned by a wrapper instance."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import TYPE_CHECKING

from klaude.errors import KlaudeError
from klaude.infra.ipc.protocol import (
    E_INTERNAL,
    E_INVALID_JSON,
    E_INVALID_PAYLOAD,
    E_UNSUPPORTED_ACTION,
    InstanceResponse,
    decode_request,
    encode,
    make_error,
    success,
)

if TYPE_CHECKING:
    from klaude.infra.ipc.handlers import RequestRouter

logger = logging.getLogger(__name__)

READ_LIMIT = 4 * 1024 * 1024


class InstanceServer:
    """Serves one request per connection, then closes it."""

    def __init__(self, socket_path: str, router: RequestRouter) -> None:
        self._socket_path = socket_path
        self._router = router
        self._server: asyncio.Server | None = None

    @property
    def socket_path(self) -> str:
        return self._socket_path

    async def start(self) -> None:
        """Start listening on the Unix socket."""
        # Remove stale socket file
        try:
            os.unlink(self._socket_path)
        except FileNotFoundError:
            pass

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=self._socket_path,
            limit=READ_LIMIT,
        )
        os.chmod(self._socket_path, 0o600)
        logger.info("Instance socket listening on %s", self._socket_path)

    async def stop(self) -> None:
        """Stop the server and clean up the socket file."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        try:
            os.unlink(self._socket_path)
        except FileNotFoundError:
            pass
        logger.info("Instance socket closed")

    async def handle_line(self, line: bytes) -> InstanceResponse:
        """Turn one raw request line into exactly one response."""
        try:
            request = decode_request(line)
        except json.JSONDecodeError as e:
            return make_error(E_INVALID_JSON, f"Invalid JSON: {e.msg}")
        except (ValueError, UnicodeDecodeError) as e:
            return make_error(E_INVALID_PAYLOAD, str(e))

        if not self._router.has_action(request.action):
            return make_error(E_UNSUPPORTED_ACTION, f"Unsupported action: {request.action}")

        try:
            result = await self._router.dispatch(request.action, request.payload)
        except KlaudeError as e:
            logger.info("Request %s rejected: [%s] %s", request.action, e.code, e.message)
            return make_error(e.code, e.message)
        except Exception as e:
            logger.exception("Error handling %s", request.action)
            return make_error(E_INTERNAL, str(e) or type(e).__name__)
        return success(result)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            line = b""
            while not line.strip():
                line = await reader.readline()
                if not line:
                    return  # Client disconnected without a request
            response = await self.handle_line(line)
            writer.write(encode(response))
            await writer.drain()
        except asyncio.CancelledError:
            pass
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Client went away before the response was written")
        except ValueError:
            # readline() reports an over-long line as ValueError
            logger.warning("Request exceeded %d bytes; dropping connection", READ_LIMIT)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
