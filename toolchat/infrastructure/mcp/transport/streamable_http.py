"""
Streamable HTTP transport for MCP.

Built on the ``mcp`` SDK's ``streamable_http_client``. Every client message
is POSTed to the server URL; the reply is plain JSON or an event stream.
The SDK keeps the ``Mcp-Session-Id`` assigned at initialization and ends
the session with a DELETE when the transport closes.
"""

import logging
from collections.abc import Callable
from contextlib import AsyncExitStack
from typing import Any

import httpx
from mcp.client.streamable_http import streamable_http_client

from toolchat.infrastructure.mcp.transport.session_streams import (
    SSE_READ_TIMEOUT,
    SessionStreamTransport,
)

logger = logging.getLogger(__name__)


class StreamableHTTPTransport(SessionStreamTransport):
    """MCP transport where each request and its response share one HTTP exchange."""

    transport_name = "Streamable HTTP"

    _get_session_id: Callable[[], str | None] | None = None

    @property
    def session_id(self) -> str | None:
        return self._get_session_id() if self._get_session_id is not None else None

    async def _enter_streams(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        client = await stack.enter_async_context(
            self._http_client(
                headers=dict(self._config.headers),
                timeout=httpx.Timeout(self._connect_timeout, read=SSE_READ_TIMEOUT),
            )
        )
        read_stream, write_stream, self._get_session_id = await stack.enter_async_context(
            streamable_http_client(self._config.url or "", http_client=client)
        )
        return read_stream, write_stream
