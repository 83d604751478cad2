"""Recovery parsing for streamed tool-call arguments."""

import json
import logging
from typing import Any, cast

logger = logging.getLogger(__name__)

# Key under which unparseable arguments are passed on.
RAW_ARGUMENTS_KEY = "_raw"


def _escape_control_chars(s: str) -> str:
    """Escape control characters in a JSON string."""
    return s.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")


def _try_fix_control_chars(raw_args: str, tool_name: str) -> dict[str, Any] | None:
    """Attempt to parse JSON after escaping unescaped control characters."""
    try:
        result = json.loads(_escape_control_chars(raw_args))
    except json.JSONDecodeError:
        return None
    if not isinstance(result, dict):
        return None
    logger.info(f"Parsed JSON after escaping control chars for {tool_name}")
    return cast(dict[str, Any], result)


def _try_fix_double_encoded(raw_args: str, tool_name: str) -> dict[str, Any] | None:
    """Attempt to parse double-encoded JSON."""
    if not (raw_args.startswith('"') and raw_args.endswith('"')):
        return None
    try:
        inner = raw_args[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        result = json.loads(inner)
    except json.JSONDecodeError:
        return None
    if not isinstance(result, dict):
        return None
    logger.info(f"Parsed double-encoded JSON for {tool_name}")
    return cast(dict[str, Any], result)


def parse_tool_arguments(raw_args: str | None, tool_name: str) -> dict[str, Any]:
    """
    Parse tool call arguments with error recovery.

    Returns:
        The arguments object; ``{"_raw": raw_args}`` when nothing parses.
    """
    raw_args = (raw_args or "").strip()
    if not raw_args:
        return {}

    try:
        parsed = json.loads(raw_args)
        if isinstance(parsed, dict):
            return cast(dict[str, Any], parsed)
    except json.JSONDecodeError as e:
        logger.warning(
            f"Failed to parse tool arguments for {tool_name}: {e}. "
            f"Arguments preview: {raw_args[:200]}..."
        )

    fixed = _try_fix_control_chars(raw_args, tool_name)
    if fixed is not None:
        return fixed

    fixed = _try_fix_double_encoded(raw_args, tool_name)
    if fixed is not None:
        return fixed

    logger.warning(f"Could not parse tool arguments for {tool_name}, passing {RAW_ARGUMENTS_KEY}")
    return {RAW_ARGUMENTS_KEY: raw_args}
