"""Unit tests for streamed tool argument parsing."""

import pytest

from toolchat.infrastructure.agent.core.tool_arguments import RAW_ARGUMENTS_KEY, parse_tool_arguments


@pytest.mark.unit
class TestParseToolArguments:
    """Test argument recovery."""

    def test_valid_object(self):
        assert parse_tool_arguments('{"path": "/tmp"}', "read") == {"path": "/tmp"}

    def test_empty_arguments(self):
        """Missing arguments become an empty object."""
        assert parse_tool_arguments(None, "read") == {}
        assert parse_tool_arguments("  ", "read") == {}

    def test_unescaped_newline_is_recovered(self):
        """Literal control characters inside strings are escaped and parsed."""
        assert parse_tool_arguments('{"text": "a\nb"}', "write") == {"text": "a\nb"}

    def test_double_encoded_object(self):
        """A JSON string wrapping an object is unwrapped."""
        assert parse_tool_arguments('"{\\"q\\": 1}"', "search") == {"q": 1}

    def test_unparseable_arguments_are_passed_raw(self):
        """Garbage is preserved under the raw key."""
        assert parse_tool_arguments('{"path": ', "read") == {RAW_ARGUMENTS_KEY: '{"path":'}

    def test_non_object_json_is_raw(self):
        """Valid JSON that is not an object is not accepted as arguments."""
        assert parse_tool_arguments("[1, 2]", "read") == {RAW_ARGUMENTS_KEY: "[1, 2]"}
