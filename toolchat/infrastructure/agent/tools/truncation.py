"""Tool Output Truncation Module.

Caps tool output at a fixed number of characters so that a single tool
result cannot flood the model context. Truncated output always carries an
explicit marker; output at or under the limit is returned unchanged.
"""

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 20_000

TRUNCATION_MARKER = "[Output truncated: showing {shown} of {total} characters]"


@dataclass
class TruncationResult:
    """Result of truncating tool output."""

    output: str = ""
    truncated: bool = False
    original_length: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "output": self.output,
            "truncated": self.truncated,
            "original_length": self.original_length,
        }


def truncate_output(content: str, max_chars: int = MAX_OUTPUT_CHARS) -> TruncationResult:
    """
    Truncate content to at most ``max_chars`` characters plus a marker.

    Args:
        content: Tool output
        max_chars: Maximum characters kept from the output

    Returns:
        TruncationResult with the (possibly) truncated output
    """
    total = len(content)
    if total <= max_chars:
        return TruncationResult(output=content, truncated=False, original_length=total)

    marker = TRUNCATION_MARKER.format(shown=max_chars, total=total)
    logger.warning(f"Tool output truncated from {total} to {max_chars} characters")
    return TruncationResult(
        output=f"{content[:max_chars]}\n\n{marker}",
        truncated=True,
        original_length=total,
    )


__all__ = [
    "MAX_OUTPUT_CHARS",
    "TRUNCATION_MARKER",
    "TruncationResult",
    "truncate_output",
]
