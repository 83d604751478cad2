"""Unit tests for MCPConnectionRegistry."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from toolchat.domain.exceptions.mcp import (
    AuthorizationRequired,
    ConnectTimeout,
    Disconnected,
    MCPServerBusyError,
    MCPServerError,
    MCPServerNotFoundError,
    OAuthError,
    TransportTimeout,
)
from toolchat.domain.model.mcp.server import ServerConfig, TransportType
from toolchat.domain.model.mcp.status import ServerStatus, ServerStatusType
from toolchat.infrastructure.mcp.oauth import OAuthClientInfo, OAuthCoordinator, OAuthTokens

FS = ServerConfig.stdio("fs", "mcp-fs")
GIT = ServerConfig.stdio("git", "mcp-git")
DOCS = ServerConfig.remote("docs", "https://docs.test/mcp")


@pytest.mark.unit
class TestConnect:
    """Test connect, discovery and failure isolation."""

    async def test_failure_of_one_server_does_not_block_others(self, make_registry, client_factory):
        """A failing server ends in error while its sibling connects."""
        client_factory.specs["fs"] = {"connect_error": ConnectTimeout("spawn hung")}
        registry = make_registry(FS, GIT)

        statuses = await registry.connect_all()

        assert statuses["fs"].status is ServerStatusType.ERROR
        assert "spawn hung" in statuses["fs"].error
        assert statuses["git"].is_connected
        assert registry.get_tool("read").server_id == "git"

    async def test_disabled_servers_are_skipped(self, make_registry, client_factory):
        """connect_all only attempts enabled servers."""
        disabled = ServerConfig(id="off", transport_type=TransportType.STDIO, command="x", enabled=False)
        registry = make_registry(FS, disabled)

        statuses = await registry.connect_all()

        assert list(statuses) == ["fs"]
        assert "off" not in client_factory.created

    async def test_discovery_failure_disconnects(self, make_registry, client_factory):
        """A server whose tool discovery fails is not kept alive."""
        client_factory.specs["fs"] = {"list_error": TransportTimeout("slow")}
        registry = make_registry(FS)

        status = await registry.connect("fs")

        assert status.status is ServerStatusType.ERROR
        assert "tool discovery failed" in status.error
        assert client_factory.latest("fs").disconnect_calls == 1
        assert registry.tools() == []

    async def test_server_without_tools_is_not_kept(self, make_registry, client_factory):
        """A server exposing no tools is disconnected."""
        client_factory.specs["fs"] = {"tools": []}
        registry = make_registry(FS)

        status = await registry.connect("fs")

        assert status == ServerStatus.failed("server exposes no tools")

    async def test_connect_is_idempotent(self, make_registry, client_factory):
        """Connecting a connected server does nothing."""
        registry = make_registry(FS)

        await registry.connect("fs")
        await registry.connect("fs")

        assert len(client_factory.created["fs"]) == 1

    async def test_concurrent_connects_share_one_attempt(self, make_registry, client_factory):
        """Simultaneous connects of one server join a single attempt."""
        registry = make_registry(FS)

        await asyncio.gather(registry.connect("fs"), registry.connect("fs"))

        assert len(client_factory.created["fs"]) == 1

    async def test_disconnect_is_idempotent(self, make_registry, client_factory):
        """Disconnect drops tools once and tolerates repeats."""
        registry = make_registry(FS)
        await registry.connect("fs")

        await registry.disconnect("fs")
        await registry.disconnect("fs")

        assert registry.status("fs") == ServerStatus.disconnected()
        assert client_factory.latest("fs").disconnect_calls == 1
        assert registry.get_tool("read") is None

    async def test_disconnect_during_tool_discovery_closes_client(self, make_registry, client_factory):
        """Cancelling a connect that is still listing tools closes the half-open client."""
        client_factory.specs["fs"] = {"list_delay": 30}
        registry = make_registry(FS)

        connecting = asyncio.create_task(registry.connect("fs"))
        while "fs" not in client_factory.created:
            await asyncio.sleep(0)
        client = client_factory.latest("fs")
        await asyncio.wait_for(client.list_started.wait(), timeout=5)

        await registry.disconnect("fs")

        assert client.disconnect_calls == 1
        assert registry.status("fs") == ServerStatus.disconnected()
        assert registry.get_tool("read") is None
        with pytest.raises(asyncio.CancelledError):
            await connecting

    async def test_error_to_connecting_on_manual_retry(self, make_registry, client_factory):
        """A failed server can be retried by calling connect again."""
        client_factory.specs["fs"] = [{"connect_error": ConnectTimeout("down")}, {}]
        registry = make_registry(FS)
        seen = []
        registry.add_status_listener(lambda sid, status: seen.append(status.status))

        await registry.connect("fs")
        await registry.connect("fs")

        assert seen == [
            ServerStatusType.CONNECTING,
            ServerStatusType.ERROR,
            ServerStatusType.CONNECTING,
            ServerStatusType.CONNECTED,
        ]

    async def test_unknown_server(self, make_registry):
        """Operations on an unconfigured server raise MCPServerNotFoundError."""
        registry = make_registry()

        with pytest.raises(MCPServerNotFoundError):
            await registry.connect("missing")


@pytest.mark.unit
class TestHealthChecks:
    """Test liveness checks and reconnect scheduling."""

    async def test_health_failure_removes_tools_exactly_once(self, make_registry, client_factory):
        """Repeated health check failures disconnect and drop tools only once."""
        registry = make_registry(FS, GIT)
        client_factory.specs["git"] = {"tools": [{"name": "log"}]}
        await registry.connect_all()
        transitions = []
        registry.add_status_listener(lambda sid, status: transitions.append((sid, status.status)))
        client = client_factory.latest("fs")
        client.ping_error = Disconnected("gone")

        first = await registry.health_check("fs")
        second = await registry.health_check("fs")

        assert first is False and second is False
        assert transitions == [("fs", ServerStatusType.DISCONNECTED)]
        assert client.disconnect_calls == 1
        assert registry.get_tool("read") is None
        assert registry.get_tool("log") is not None

    async def test_lost_server_reconnects_on_next_cycle(self, make_registry, client_factory):
        """A server lost in one cycle is reconnected by the next one."""
        registry = make_registry(FS)
        await registry.connect("fs")
        client_factory.latest("fs").ping_error = Disconnected("gone")

        await registry.run_health_cycle()
        assert registry.status("fs") == ServerStatus.disconnected()

        await registry.run_health_cycle()
        assert registry.status("fs").is_connected
        assert len(client_factory.created["fs"]) == 2

    async def test_manual_disconnect_is_not_reconnected(self, make_registry, client_factory):
        """Only lost servers are retried by the health cycle."""
        registry = make_registry(FS)
        await registry.connect("fs")
        await registry.disconnect("fs")

        await registry.run_health_cycle()

        assert registry.status("fs") == ServerStatus.disconnected()
        assert len(client_factory.created["fs"]) == 1

    async def test_gives_up_after_max_attempts(self, make_registry, client_factory):
        """Reconnect stops after the configured number of failed cycles."""
        client_factory.specs["fs"] = [{}, {"connect_error": ConnectTimeout("down")}]
        registry = make_registry(FS, max_reconnect_attempts=2)
        await registry.connect("fs")
        client_factory.latest("fs").ping_error = Disconnected("gone")

        for _ in range(5):
            await registry.run_health_cycle()

        status = registry.status("fs")
        assert status.status is ServerStatusType.ERROR
        assert "gave up reconnecting" in status.error
        assert len(client_factory.created["fs"]) == 3

    async def test_connection_lost_callback_disconnects(self, make_registry, client_factory):
        """A transport reporting loss moves the server to disconnected."""
        registry = make_registry(FS)
        await registry.connect("fs")
        client = client_factory.latest("fs")

        client.on_connection_lost(Disconnected("process exited"))
        for _ in range(10):
            await asyncio.sleep(0)

        assert registry.status("fs") == ServerStatus.disconnected()
        assert registry.get_tool("read") is None

    async def test_tools_changed_triggers_rediscovery(self, make_registry, client_factory):
        """A list_changed notification refreshes the server's tools."""
        registry = make_registry(FS)
        await registry.connect("fs")
        client = client_factory.latest("fs")
        client.tools = [{"name": "read"}, {"name": "write"}]

        client.on_tools_changed()
        for _ in range(10):
            await asyncio.sleep(0)

        assert registry.get_tool("write") is not None

    async def test_start_and_stop(self, make_registry, client_factory):
        """stop() cancels health checks and disconnects everything."""
        registry = make_registry(FS, health_check_interval_seconds=3600)
        await registry.connect("fs")

        async with registry:
            assert registry._health_check_task is not None

        assert registry._health_check_task is None
        assert registry.status("fs") == ServerStatus.disconnected()


@pytest.mark.unit
class TestAuthorization:
    """Test OAuth-driven reconnects."""

    @pytest.fixture
    def oauth(self):
        oauth = MagicMock()
        oauth.authorization_headers = AsyncMock(return_value={})
        oauth.authorize = AsyncMock()
        return oauth

    async def test_unauthorized_server_is_authenticating(self, make_registry, client_factory, oauth):
        """A 401 on connect leaves the server waiting for authorization."""
        client_factory.specs["docs"] = {"connect_error": AuthorizationRequired("docs")}
        registry = make_registry(DOCS, oauth=oauth)

        status = await registry.connect("docs")

        assert status.status is ServerStatusType.AUTHENTICATING

    async def test_authorization_reconnects_exactly_once(self, make_registry, client_factory, oauth):
        """A successful token exchange is followed by one connect attempt."""
        client_factory.specs["docs"] = [{"connect_error": AuthorizationRequired("docs")}, {}]
        registry = make_registry(DOCS, oauth=oauth)
        await registry.connect("docs")
        oauth.authorization_headers.return_value = {"Authorization": "Bearer fresh"}

        status = await registry.authenticate("docs")

        assert status.is_connected
        oauth.authorize.assert_awaited_once()
        assert len(client_factory.created["docs"]) == 2
        assert client_factory.latest("docs").config.headers["Authorization"] == "Bearer fresh"
        assert registry.remote_servers()[0].headers["Authorization"] == "Bearer fresh"

    async def test_failed_authorization_is_error(self, make_registry, client_factory, oauth):
        """An OAuth failure ends in error without reconnecting."""
        oauth.authorize.side_effect = OAuthError("State parameter mismatch")
        registry = make_registry(DOCS, oauth=oauth)

        status = await registry.authenticate("docs")

        assert status.status is ServerStatusType.ERROR
        assert status.error.startswith("authorization failed")
        assert "docs" not in client_factory.created

    async def test_authenticate_without_coordinator(self, make_registry):
        """Authorization needs an OAuth coordinator."""
        registry = make_registry(DOCS)

        with pytest.raises(MCPServerError):
            await registry.authenticate("docs")

    async def test_remove_server_revokes_stored_credentials(self, make_registry, credential_store):
        """Removing a remote server deletes its tokens and registered client."""
        coordinator = OAuthCoordinator(credential_store)
        await coordinator.tokens.save_tokens("docs", OAuthTokens(access_token="at-1"))
        await coordinator.tokens.save_client("docs", OAuthClientInfo(client_id="client-1"))
        await coordinator.tokens.save_tokens("other", OAuthTokens(access_token="at-2"))
        registry = make_registry(DOCS, oauth=coordinator)

        await registry.remove_server("docs")

        assert await coordinator.tokens.get_tokens("docs") is None
        assert await coordinator.tokens.get_client("docs") is None
        assert (await coordinator.tokens.get_tokens("other")).access_token == "at-2"


@pytest.mark.unit
class TestToolCatalog:
    """Test aggregated tool naming and catalog surfaces."""

    async def test_colliding_name_is_prefixed_with_server_id(self, make_registry, client_factory):
        """The second server's duplicate tool is exposed as <server_id>__<tool>."""
        client_factory.specs["fs"] = {"tools": [{"name": "search"}]}
        client_factory.specs["git"] = {"tools": [{"name": "search"}]}
        registry = make_registry(FS, GIT)

        await registry.connect("fs")
        await registry.connect("git")

        prefixed = registry.get_tool("git__search")
        assert registry.get_tool("search").server_id == "fs"
        assert prefixed.server_id == "git"
        assert prefixed.original_name == "search"

        await registry.call_tool(prefixed, {"q": "x"})
        assert client_factory.latest("git").calls == [("search", {"q": "x"})]

    async def test_prefixed_name_collision_gets_suffix(self, make_registry, client_factory):
        """A prefixed name that is itself taken gets a numeric suffix."""
        client_factory.specs["fs"] = {"tools": [{"name": "search"}, {"name": "git__search"}]}
        client_factory.specs["git"] = {"tools": [{"name": "search"}]}
        registry = make_registry(FS, GIT)

        await registry.connect("fs")
        await registry.connect("git")

        assert registry.get_tool("git__search_2").server_id == "git"

    async def test_catalog_entries(self, make_registry):
        """Catalog entries carry schema, owning server and status."""
        registry = make_registry(FS)
        await registry.connect("fs")

        entry = registry.tool_catalog()[0]

        assert entry == {
            "name": "read",
            "description": "Read a file",
            "inputSchema": {},
            "serverId": "fs",
            "status": "connected",
        }

    async def test_local_only_tools_exclude_remote_servers(self, make_registry, client_factory):
        """Server-assisted mode offers only stdio tools as functions."""
        client_factory.specs["docs"] = {"tools": [{"name": "lookup"}]}
        registry = make_registry(FS, DOCS)
        await registry.connect_all()

        all_names = [t["function"]["name"] for t in registry.openai_tools()]
        local_names = [t["function"]["name"] for t in registry.openai_tools(local_only=True)]

        assert sorted(all_names) == ["lookup", "read"]
        assert local_names == ["read"]
        assert [s.id for s in registry.remote_servers()] == ["docs"]

    async def test_call_on_disconnected_server(self, make_registry):
        """Calling a tool of a server that went away raises Disconnected."""
        registry = make_registry(FS)
        await registry.connect("fs")
        descriptor = registry.get_tool("read")
        await registry.disconnect("fs")

        with pytest.raises(Disconnected):
            await registry.call_tool(descriptor, {})


@pytest.mark.unit
class TestConfigurationChanges:
    """Test config edits and status listeners."""

    async def test_config_edit_requires_disconnected(self, make_registry):
        """A connected server's config cannot be replaced."""
        registry = make_registry(FS)
        await registry.connect("fs")

        with pytest.raises(MCPServerBusyError):
            registry.update_server(ServerConfig.stdio("fs", "other"))

        await registry.disconnect("fs")
        registry.update_server(ServerConfig.stdio("fs", "other"))
        assert registry.get_config("fs").command == "other"

    async def test_remove_server(self, make_registry):
        """Removing a server disconnects it and forgets it."""
        registry = make_registry(FS)
        await registry.connect("fs")

        await registry.remove_server("fs")

        assert registry.server_ids() == []
        assert registry.tools() == []

    async def test_listener_errors_are_contained(self, make_registry):
        """A failing listener neither breaks connect nor other listeners."""
        registry = make_registry(FS)
        registry.add_status_listener(MagicMock(side_effect=RuntimeError("ui gone")))
        seen = []
        unsubscribe = registry.add_status_listener(lambda sid, status: seen.append(str(status)))

        await registry.connect("fs")
        unsubscribe()
        await registry.disconnect("fs")

        assert seen == ["connecting", "connected"]
