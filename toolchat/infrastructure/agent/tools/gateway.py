"""
Tool Execution Gateway - runs model-issued tool calls against MCP servers.

Encapsulates:
- Tool name resolution to the owning server
- Approval gating before anything is invoked
- Per-call timeout
- Output formatting and truncation
- Mapping every failure to a tool-role result

Execution failures never escape ``execute``; the conversation loop always
receives a ToolResult it can append.
"""

import asyncio
import json
import logging
import time
from typing import Any

from toolchat.domain.exceptions.mcp import (
    Disconnected,
    RemoteError,
    ToolDenied,
    ToolExecutionError,
    ToolTimeout,
    TransportError,
    TransportTimeout,
    UnknownTool,
)
from toolchat.domain.model.mcp.tool import ToolCallRequest, ToolResult
from toolchat.infrastructure.agent.core.tool_arguments import RAW_ARGUMENTS_KEY
from toolchat.infrastructure.agent.permission.approval import ApprovalPolicy
from toolchat.infrastructure.agent.tools.truncation import MAX_OUTPUT_CHARS, truncate_output
from toolchat.infrastructure.mcp.registry import MCPConnectionRegistry

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 120.0

# Stable prefix of every denied-call result.
DENIAL_MARKER = "[tool call denied]"


def format_tool_content(content: list[Any]) -> str:
    """Flatten MCP content blocks into text for a tool-role message."""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            parts.append(str(item))
            continue
        item_type = item.get("type")
        if item_type == "text":
            parts.append(item.get("text", ""))
        elif item_type in ("image", "audio"):
            parts.append(f"[{item_type}: {item.get('mimeType', 'unknown')}]")
        elif item_type == "resource":
            resource = item.get("resource") or {}
            if "text" in resource:
                parts.append(resource["text"])
            else:
                parts.append(f"[resource: {resource.get('uri', 'unknown')}]")
        elif item_type == "resource_link":
            parts.append(f"[resource: {item.get('uri', 'unknown')}]")
        else:
            parts.append(json.dumps(item, ensure_ascii=False))
    return "\n".join(parts)


class ToolExecutionGateway:
    """
    Executes tool calls through the connection registry.

    Example:
        gateway = ToolExecutionGateway(registry, approval)
        results = await gateway.execute_batch(requests)
        messages.extend(r.to_message() for r in results)
    """

    def __init__(
        self,
        registry: MCPConnectionRegistry,
        approval: ApprovalPolicy,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        max_output_chars: int = MAX_OUTPUT_CHARS,
    ) -> None:
        """
        Initialize tool execution gateway.

        Args:
            registry: Source of tool descriptors and live connections
            approval: Approval policy consulted before every call
            timeout: Per-call timeout in seconds
            max_output_chars: Output length kept before truncation
        """
        self.registry = registry
        self.approval = approval
        self.timeout = timeout
        self.max_output_chars = max_output_chars

    async def execute(self, request: ToolCallRequest) -> ToolResult:
        """
        Execute one tool call.

        Returns:
            ToolResult correlated to ``request.id``; failures have ``is_error=True``.
        """
        start_time = time.time()
        try:
            result = await self._execute(request)
        except ToolDenied as e:
            return self._error_result(request, f"{DENIAL_MARKER} {e.message}", "denied")
        except ToolTimeout as e:
            return self._error_result(request, e.message, "timeout")
        except UnknownTool as e:
            return self._error_result(request, e.message, "unknown_tool")
        except ToolExecutionError as e:
            return self._error_result(request, e.message, "invalid_arguments")
        except RemoteError as e:
            return self._error_result(request, f"Tool '{request.name}' failed: {e}", "remote_error")
        except Disconnected as e:
            return self._error_result(
                request, f"Tool '{request.name}' failed: server disconnected ({e})", "disconnected"
            )
        except TransportError as e:
            return self._error_result(request, f"Tool '{request.name}' failed: {e}", "transport_error")
        except Exception as e:
            logger.error(f"Unexpected failure executing tool {request.name}: {e}", exc_info=True)
            return self._error_result(request, f"Tool '{request.name}' failed: {e}", "internal_error")

        result.metadata["duration_ms"] = int((time.time() - start_time) * 1000)
        return result

    async def _execute(self, request: ToolCallRequest) -> ToolResult:
        descriptor = self.registry.get_tool(request.name)
        if descriptor is None:
            raise UnknownTool(request.name)

        if RAW_ARGUMENTS_KEY in request.arguments:
            raise ToolExecutionError(
                request.name,
                f"Invalid JSON arguments for tool '{request.name}': "
                f"{str(request.arguments[RAW_ARGUMENTS_KEY])[:200]}",
            )

        if not await self.approval.resolve(request.name):
            raise ToolDenied(request.name)

        logger.debug(f"Executing tool {request.name} (call_id={request.id})")
        try:
            raw = await asyncio.wait_for(
                self.registry.call_tool(descriptor, request.arguments, timeout=self.timeout),
                timeout=self.timeout,
            )
        except (TimeoutError, TransportTimeout) as e:
            raise ToolTimeout(request.name, self.timeout) from e

        truncation = truncate_output(
            format_tool_content(raw.get("content") or []), self.max_output_chars
        )
        is_error = bool(raw.get("isError"))
        if is_error:
            logger.warning(f"Tool {request.name} reported an error")
        return ToolResult(
            call_id=request.id,
            name=request.name,
            output=truncation.output,
            is_error=is_error,
            was_truncated=truncation.truncated,
            original_length=truncation.original_length,
            metadata={"server_id": descriptor.server_id},
        )

    @staticmethod
    def _error_result(request: ToolCallRequest, message: str, error_type: str) -> ToolResult:
        logger.warning(f"Tool call {request.name} (call_id={request.id}) failed: {message}")
        return ToolResult(
            call_id=request.id,
            name=request.name,
            output=f"Error: {message}",
            is_error=True,
            metadata={"error_type": error_type},
        )

    async def execute_batch(self, requests: list[ToolCallRequest]) -> list[ToolResult]:
        """
        Execute the tool calls of one assistant turn concurrently.

        A call waiting for approval only suspends itself. Results are
        reassembled by call id in request order.
        """
        if not requests:
            return []
        results = await asyncio.gather(*(self.execute(r) for r in requests))
        by_id = {result.call_id: result for result in results}
        return [by_id[request.id] for request in requests]
