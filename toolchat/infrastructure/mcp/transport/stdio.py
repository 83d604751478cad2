"""
Stdio transport for MCP.

Spawns an MCP server as a subprocess and exchanges newline-delimited
JSON-RPC frames over its stdin/stdout. A background reader task
demultiplexes responses to waiting callers by request id.
"""

import asyncio
import json
import logging
import os
from typing import Any

from toolchat.domain.exceptions.mcp import Disconnected, ProcessSpawnError
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.ports.mcp.transport_port import CloseHandler, NotificationHandler
from toolchat.infrastructure.mcp.transport.base import (
    PendingRequests,
    build_notification,
    build_request,
    closed_error,
    decode_json,
    route_message,
)

logger = logging.getLogger(__name__)

# Allow large single-line tool results.
STREAM_LIMIT = 16 * 1024 * 1024
STOP_TIMEOUT = 5.0


class StdioTransport:
    """MCP transport over a spawned process's stdio pipes."""

    def __init__(self, config: ServerConfig) -> None:
        self.server_id = config.id
        self.on_notification: NotificationHandler | None = None
        self.on_close: CloseHandler | None = None
        self._config = config
        self._process: asyncio.subprocess.Process | None = None
        self._pending = PendingRequests(config.id)
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._is_open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    async def open(self) -> None:
        """
        Start subprocess and the background reader.

        Raises:
            ProcessSpawnError: If the subprocess fails to start.
        """
        if self._is_open:
            logger.debug(f"[{self.server_id}] Stdio transport already open")
            return

        config = self._config
        env = {**os.environ, **config.env} if config.env else None
        command = [config.command or "", *config.args]
        logger.info(f"[{self.server_id}] Starting MCP server: {' '.join(command)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error(f"[{self.server_id}] Failed to start MCP server process: {e}")
            raise ProcessSpawnError(
                f"Failed to start '{config.command}' for MCP server '{self.server_id}'",
                original_error=e,
            ) from e

        self._closing = False
        self._is_open = True
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(f"[{self.server_id}] Started MCP server process (pid={self._process.pid})")

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if not self._is_open:
            raise closed_error(self.server_id, "transport not connected")

        request_id, future = self._pending.register()
        try:
            await self._write(build_request(request_id, method, params))
        except Disconnected:
            self._pending.discard(request_id)
            raise
        return await self._pending.wait(request_id, future, method, timeout)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if not self._is_open:
            raise closed_error(self.server_id, "transport not connected")
        await self._write(build_notification(method, params))

    async def _write(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise closed_error(self.server_id, "transport not connected")

        line = json.dumps(message, ensure_ascii=False) + "\n"
        logger.debug(
            f"[{self.server_id}] Sending: {message.get('method', 'response')} (id={message.get('id')})"
        )
        async with self._write_lock:
            try:
                process.stdin.write(line.encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise Disconnected(
                    f"[{self.server_id}] Process stdin closed", original_error=e
                ) from e

    async def _read_loop(self) -> None:
        """Read stdout lines until EOF and route each decoded message."""
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        reason: Exception | None = None
        try:
            while True:
                try:
                    line = await stdout.readline()
                except ValueError as e:
                    # Line exceeded STREAM_LIMIT; the stream cannot be resynchronized.
                    reason = Disconnected(f"[{self.server_id}] Oversized message", original_error=e)
                    break
                if not line:
                    break
                text = line.decode(errors="replace").strip()
                if not text:
                    continue
                message = decode_json(text, self.server_id)
                if message is None:
                    continue
                await route_message(
                    message, self._pending, self.on_notification, self._write, self.server_id
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.server_id}] Stdio reader failed: {e}", exc_info=True)
            reason = Disconnected(f"[{self.server_id}] Reader failed", original_error=e)

        if not self._closing:
            returncode = await self._wait_returncode()
            if reason is None:
                reason = closed_error(
                    self.server_id, f"process exited unexpectedly (returncode={returncode})"
                )
            logger.warning(f"{reason}")
            self._connection_lost(reason)

    async def _wait_returncode(self) -> int | None:
        if self._process is None:
            return None
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=1.0)
        except TimeoutError:
            return self._process.returncode

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                return
            logger.debug(f"[{self.server_id}] stderr: {line.decode(errors='replace').rstrip()}")

    def _connection_lost(self, reason: Exception) -> None:
        self._is_open = False
        self._pending.fail_all(reason)
        if self.on_close is not None:
            try:
                self.on_close(reason)
            except Exception as e:
                logger.error(f"[{self.server_id}] Close handler failed: {e}", exc_info=True)

    async def close(self) -> None:
        """Terminate subprocess. Idempotent."""
        if self._process is None:
            return

        self._closing = True
        self._is_open = False
        self._pending.fail_all(closed_error(self.server_id, "connection closed"))

        process, self._process = self._process, None
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
            except TimeoutError:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._stderr_task = None
        logger.info(f"[{self.server_id}] Stdio transport stopped")
