"""Streaming chat backends."""

from .llm_stream import LLMStream, StreamConfig
from .remote_stream import ResponsesConfig, ResponsesStream, to_responses_input
from .tool_arguments import parse_tool_arguments

__all__ = [
    "LLMStream",
    "ResponsesConfig",
    "ResponsesStream",
    "StreamConfig",
    "parse_tool_arguments",
    "to_responses_input",
]
