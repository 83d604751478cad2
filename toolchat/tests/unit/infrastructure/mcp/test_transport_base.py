"""Unit tests for request correlation and JSON-RPC message routing."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from toolchat.domain.exceptions.mcp import Disconnected, RemoteError, TransportTimeout
from toolchat.infrastructure.mcp.transport.base import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    PendingRequests,
    build_request,
    decode_json,
    route_message,
)


@pytest.fixture
def pending():
    """Create an empty pending request table."""
    return PendingRequests("test-server")


@pytest.mark.unit
class TestPendingRequests:
    """Test request id allocation and response correlation."""

    async def test_ids_increase_monotonically(self, pending):
        """Each registered request gets a fresh, larger id."""
        first, _ = pending.register()
        second, _ = pending.register()

        assert second == first + 1
        assert len(pending) == 2

    async def test_resolve_sets_result(self, pending):
        """A result response resolves the matching future."""
        request_id, future = pending.register()

        matched = pending.resolve({"jsonrpc": "2.0", "id": request_id, "result": {"ok": True}})

        assert matched is True
        assert future.result() == {"ok": True}
        assert request_id not in pending

    async def test_duplicate_response_is_dropped(self, pending):
        """Only the first response for an id is delivered."""
        request_id, future = pending.register()
        pending.resolve({"id": request_id, "result": {"n": 1}})

        matched = pending.resolve({"id": request_id, "result": {"n": 2}})

        assert matched is False
        assert future.result() == {"n": 1}

    async def test_error_response_raises_remote_error(self, pending):
        """A JSON-RPC error becomes RemoteError with code and message."""
        request_id, future = pending.register()

        pending.resolve({"id": request_id, "error": {"code": -32602, "message": "bad params"}})

        with pytest.raises(RemoteError) as exc_info:
            future.result()
        assert exc_info.value.code == -32602
        assert exc_info.value.message == "bad params"

    @pytest.mark.parametrize("code", ["oops", None, {"nested": 1}])
    async def test_non_integer_error_code_falls_back_to_internal_error(self, pending, code):
        """An error whose code is not an integer still resolves as RemoteError."""
        request_id, future = pending.register()

        matched = pending.resolve({"id": request_id, "error": {"code": code, "message": "broken"}})

        assert matched is True
        with pytest.raises(RemoteError) as exc_info:
            future.result()
        assert exc_info.value.code == INTERNAL_ERROR
        assert exc_info.value.message == "broken"
        assert request_id not in pending

    async def test_fail_all_fails_every_pending_request(self, pending):
        """Closing the connection fails all in-flight requests with Disconnected."""
        _, first = pending.register()
        _, second = pending.register()

        pending.fail_all(Disconnected("closed"))

        for future in (first, second):
            with pytest.raises(Disconnected):
                future.result()
        assert len(pending) == 0

    async def test_wait_times_out_and_discards(self, pending):
        """A request without a response times out and leaves the table."""
        request_id, future = pending.register()

        with pytest.raises(TransportTimeout):
            await pending.wait(request_id, future, "tools/list", timeout=0.01)
        assert request_id not in pending


@pytest.mark.unit
class TestRouteMessage:
    """Test routing of responses, notifications and server requests."""

    async def test_response_resolves_pending(self, pending):
        """Responses are delivered to the waiting request."""
        request_id, future = pending.register()

        await route_message({"id": request_id, "result": {}}, pending, None)

        assert future.done()

    async def test_notification_goes_to_handler(self, pending):
        """A method without an id is passed to the notification handler."""
        handler = MagicMock()
        message = {"jsonrpc": "2.0", "method": "notifications/tools/list_changed"}

        await route_message(message, pending, handler)

        handler.assert_called_once_with(message)

    async def test_handler_error_is_contained(self, pending):
        """A failing notification handler does not break routing."""
        handler = MagicMock(side_effect=RuntimeError("boom"))

        await route_message({"method": "notifications/progress"}, pending, handler)

        handler.assert_called_once()

    async def test_server_request_gets_method_not_found(self, pending):
        """Server-initiated requests are answered with a JSON-RPC error."""
        reply = AsyncMock()

        await route_message({"id": 99, "method": "sampling/createMessage"}, pending, None, reply)

        sent = reply.call_args.args[0]
        assert sent["id"] == 99
        assert sent["error"]["code"] == METHOD_NOT_FOUND

    async def test_batch_is_routed_item_by_item(self, pending):
        """A JSON array is routed as individual messages."""
        first_id, first = pending.register()
        second_id, second = pending.register()

        await route_message(
            [{"id": second_id, "result": {"n": 2}}, {"id": first_id, "result": {"n": 1}}],
            pending,
            None,
        )

        assert first.result() == {"n": 1}
        assert second.result() == {"n": 2}


@pytest.mark.unit
class TestHelpers:
    """Test envelope helpers."""

    def test_build_request_omits_missing_params(self):
        """Requests without params carry no params member."""
        assert build_request(3, "tools/list", None) == {
            "jsonrpc": "2.0",
            "id": 3,
            "method": "tools/list",
        }

    def test_decode_json_returns_none_on_garbage(self):
        """Malformed payloads are dropped rather than raised."""
        assert decode_json("{not json") is None
        assert decode_json('{"a": 1}') == {"a": 1}

    async def test_wait_propagates_cancellation(self, pending):
        """Cancelling a waiter removes its entry."""
        request_id, future = pending.register()
        task = asyncio.create_task(pending.wait(request_id, future, "x", timeout=5))
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert request_id not in pending
