"""
SSE transport for MCP (legacy HTTP+SSE protocol).

Built on the ``mcp`` SDK's ``sse_client``: one long-lived GET event stream
carries server-to-client messages, and the endpoint announced on it
receives POSTed client messages.
"""

import logging
from contextlib import AsyncExitStack
from typing import Any

import httpx
from mcp.client.sse import sse_client

from toolchat.infrastructure.mcp.transport.session_streams import (
    SSE_READ_TIMEOUT,
    SessionStreamTransport,
)

logger = logging.getLogger(__name__)


class SSETransport(SessionStreamTransport):
    """MCP transport over a GET event stream plus POSTed messages."""

    transport_name = "SSE"

    async def _enter_streams(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        # Ready once the server has announced its message endpoint.
        read_stream, write_stream = await stack.enter_async_context(
            sse_client(
                self._config.url or "",
                headers=dict(self._config.headers) or None,
                timeout=self._connect_timeout,
                sse_read_timeout=SSE_READ_TIMEOUT,
                httpx_client_factory=self._client_for_sdk,
            )
        )
        return read_stream, write_stream

    def _client_for_sdk(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient:
        logger.debug(f"[{self.server_id}] Opening SSE event stream: {self._config.url}")
        return self._http_client(headers=headers, timeout=timeout, auth=auth)
