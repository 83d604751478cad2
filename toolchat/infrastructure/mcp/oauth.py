"""MCP OAuth Authentication Support.

OAuth 2.0 authorization code flow with PKCE (S256) for remote MCP
servers, with RFC 8414 metadata discovery and RFC 7591 dynamic client
registration.

Components:
- OAuthTokenStore: token and registered-client persistence over the credential store
- OAuthSession: state of one authorization attempt
- OAuthCoordinator: drives the flow and supplies bearer headers for connects

Reconnecting to the server with the new token is the connection
registry's job, not this module's.
"""

import asyncio
import base64
import hashlib
import inspect
import logging
import secrets
import time
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlencode, urlsplit

import httpx

from toolchat.domain.exceptions.mcp import OAuthError
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.ports.credential_store import (
    OAUTH_CLIENT_KEY,
    OAUTH_TOKENS_KEY,
    CredentialStorePort,
)
from toolchat.infrastructure.mcp.oauth_callback import (
    DEFAULT_BASE_PORT,
    DEFAULT_CALLBACK_TIMEOUT,
    OAuthCallbackListener,
)

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"
HTTP_TIMEOUT = 30.0

# Refresh tokens this many seconds before they expire.
EXPIRY_MARGIN = 60.0

BrowserOpener = Callable[[str], Any]


def base64_url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code verifier and its S256 challenge."""
    code_verifier = secrets.token_urlsafe(32)
    challenge = base64_url_encode(hashlib.sha256(code_verifier.encode("ascii")).digest())
    return code_verifier, challenge


def generate_state() -> str:
    """Generate a random state nonce for CSRF protection."""
    return secrets.token_urlsafe(16)


# ============================================
# Data Models
# ============================================


class OAuthState(str, Enum):
    """States of one authorization attempt."""

    IDLE = "idle"
    DISCOVERING_METADATA = "discovering_metadata"
    REGISTERING_CLIENT = "registering_client"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    EXCHANGING_CODE = "exchanging_code"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS: dict[OAuthState, OAuthState] = {
    OAuthState.IDLE: OAuthState.DISCOVERING_METADATA,
    OAuthState.DISCOVERING_METADATA: OAuthState.REGISTERING_CLIENT,
    OAuthState.REGISTERING_CLIENT: OAuthState.AWAITING_AUTHORIZATION,
    OAuthState.AWAITING_AUTHORIZATION: OAuthState.EXCHANGING_CODE,
    OAuthState.EXCHANGING_CODE: OAuthState.COMPLETE,
}


@dataclass
class OAuthTokens:
    """OAuth tokens from authorization server."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: float | None = None
    scope: str | None = None
    token_endpoint: str | None = None

    def is_expired(self, margin: float = 0.0) -> bool:
        return self.expires_at is not None and self.expires_at - margin < time.time()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"accessToken": self.access_token, "tokenType": self.token_type}
        if self.refresh_token:
            data["refreshToken"] = self.refresh_token
        if self.expires_at:
            data["expiresAt"] = self.expires_at
        if self.scope:
            data["scope"] = self.scope
        if self.token_endpoint:
            data["tokenEndpoint"] = self.token_endpoint
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthTokens":
        return cls(
            access_token=data["accessToken"],
            token_type=data.get("tokenType", "Bearer"),
            refresh_token=data.get("refreshToken"),
            expires_at=data.get("expiresAt"),
            scope=data.get("scope"),
            token_endpoint=data.get("tokenEndpoint"),
        )

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        token_endpoint: str,
        previous: "OAuthTokens | None" = None,
    ) -> "OAuthTokens":
        """Build tokens from a token endpoint JSON response."""
        access_token = payload.get("access_token")
        if not access_token:
            raise OAuthError("Token response did not contain an access_token")
        expires_in = payload.get("expires_in")
        return cls(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            refresh_token=payload.get("refresh_token")
            or (previous.refresh_token if previous else None),
            expires_at=time.time() + float(expires_in) if expires_in else None,
            scope=payload.get("scope") or (previous.scope if previous else None),
            token_endpoint=token_endpoint,
        )


@dataclass
class OAuthClientInfo:
    """OAuth client registration information."""

    client_id: str
    client_secret: str | None = None
    redirect_uri: str | None = None
    server_url: str | None = None
    client_secret_expires_at: float | None = None

    def is_usable_for(self, server_url: str | None, redirect_uri: str) -> bool:
        if self.server_url != server_url or self.redirect_uri != redirect_uri:
            return False
        return not (self.client_secret_expires_at and self.client_secret_expires_at < time.time())

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "redirectUri": self.redirect_uri,
            "serverUrl": self.server_url,
            "clientSecretExpiresAt": self.client_secret_expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthClientInfo":
        return cls(
            client_id=data["clientId"],
            client_secret=data.get("clientSecret"),
            redirect_uri=data.get("redirectUri"),
            server_url=data.get("serverUrl"),
            client_secret_expires_at=data.get("clientSecretExpiresAt"),
        )


@dataclass(frozen=True)
class AuthorizationServerMetadata:
    """Endpoints of the authorization server."""

    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    discovered: bool = True

    @classmethod
    def defaults_for(cls, server_url: str) -> "AuthorizationServerMetadata":
        """Fallback endpoints relative to the server origin."""
        origin = server_origin(server_url)
        return cls(
            authorization_endpoint=f"{origin}/authorize",
            token_endpoint=f"{origin}/token",
            registration_endpoint=f"{origin}/register",
            discovered=False,
        )


@dataclass
class OAuthSession:
    """State for one authorization attempt. Discarded on completion or failure."""

    server_id: str
    server_url: str
    state: OAuthState = OAuthState.IDLE
    code_verifier: str = ""
    code_challenge: str = ""
    state_nonce: str = ""
    callback_port: int | None = None
    redirect_uri: str = ""
    metadata: AuthorizationServerMetadata | None = None
    client: OAuthClientInfo | None = None
    error: str | None = None
    started_at: float = field(default_factory=time.time)

    def advance(self, target: OAuthState) -> None:
        """Move to the next state of the flow."""
        if _TRANSITIONS.get(self.state) is not target:
            raise OAuthError(
                f"Invalid OAuth transition {self.state.value} -> {target.value}", state=self.state.value
            )
        logger.debug(f"[{self.server_id}] OAuth {self.state.value} -> {target.value}")
        self.state = target

    def fail(self, reason: str) -> OAuthState:
        """Enter the failed state and return the state the failure happened in."""
        failed_in = self.state
        self.state = OAuthState.FAILED
        self.error = reason
        return failed_in


def server_origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


# ============================================
# Token Storage
# ============================================


class OAuthTokenStore:
    """Reads and writes OAuth records for MCP servers in the credential store."""

    def __init__(self, credential_store: CredentialStorePort) -> None:
        self._store = credential_store

    async def get_tokens(self, server_id: str) -> OAuthTokens | None:
        data = await self._store.get(OAUTH_TOKENS_KEY.format(server_id=server_id))
        if not data:
            return None
        try:
            return OAuthTokens.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed OAuth tokens for {server_id}: {e}")
            return None

    async def save_tokens(self, server_id: str, tokens: OAuthTokens) -> None:
        await self._store.set(OAUTH_TOKENS_KEY.format(server_id=server_id), tokens.to_dict())
        logger.info(f"Saved OAuth tokens for {server_id}")

    async def get_client(self, server_id: str) -> OAuthClientInfo | None:
        data = await self._store.get(OAUTH_CLIENT_KEY.format(server_id=server_id))
        if not data:
            return None
        try:
            return OAuthClientInfo.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed OAuth client for {server_id}: {e}")
            return None

    async def save_client(self, server_id: str, client: OAuthClientInfo) -> None:
        await self._store.set(OAUTH_CLIENT_KEY.format(server_id=server_id), client.to_dict())
        logger.info(f"Saved registered OAuth client for {server_id}: {client.client_id}")

    async def revoke(self, server_id: str) -> None:
        """Remove all OAuth records for a server."""
        await self._store.delete(OAUTH_TOKENS_KEY.format(server_id=server_id))
        await self._store.delete(OAUTH_CLIENT_KEY.format(server_id=server_id))
        logger.info(f"Revoked OAuth credentials for {server_id}")


# ============================================
# Coordinator
# ============================================


class OAuthCoordinator:
    """
    Runs the PKCE authorization-code flow for remote MCP servers.

    Usage:
        coordinator = OAuthCoordinator(credential_store)
        tokens = await coordinator.authorize(config)
        headers = await coordinator.authorization_headers(config)
    """

    def __init__(
        self,
        credential_store: CredentialStorePort,
        http_client: httpx.AsyncClient | None = None,
        open_browser: BrowserOpener | None = None,
        callback_base_port: int = DEFAULT_BASE_PORT,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        client_name: str = "toolchat",
    ) -> None:
        """
        Initialize OAuth coordinator.

        Args:
            credential_store: Where tokens and registered clients are persisted.
            http_client: Optional shared client for discovery, registration and token calls.
            open_browser: Called with the authorization URL; defaults to the system browser.
            callback_base_port: Lowest port the redirect listener may bind.
            callback_timeout: Seconds to wait for the redirect.
            client_name: Name sent during dynamic client registration.
        """
        self.tokens = OAuthTokenStore(credential_store)
        self._http_client = http_client
        self._open_browser = open_browser or webbrowser.open
        self._callback_base_port = callback_base_port
        self._callback_timeout = callback_timeout
        self._client_name = client_name
        self._sessions: dict[str, OAuthSession] = {}

    def session_state(self, server_id: str) -> OAuthState:
        session = self._sessions.get(server_id)
        return session.state if session else OAuthState.IDLE

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            return await client.request(method, url, **kwargs)

    async def authorize(self, config: ServerConfig) -> OAuthTokens:
        """
        Run one full authorization attempt and persist the resulting tokens.

        Raises:
            OAuthError: On any failure. The callback listener is always torn
                down and nothing is persisted for a failed attempt.
        """
        if not config.url:
            raise OAuthError(f"MCP server '{config.id}' has no URL to authorize against")
        if config.id in self._sessions:
            raise OAuthError(f"Authorization for '{config.id}' is already in progress")

        session = OAuthSession(server_id=config.id, server_url=config.url)
        self._sessions[config.id] = session
        logger.info(f"Starting OAuth authorization for {config.id}")
        try:
            session.advance(OAuthState.DISCOVERING_METADATA)
            session.metadata = await self.discover_metadata(config.url)

            async with OAuthCallbackListener(
                base_port=self._callback_base_port, timeout=self._callback_timeout
            ) as listener:
                session.callback_port = listener.port
                session.redirect_uri = listener.redirect_uri

                session.advance(OAuthState.REGISTERING_CLIENT)
                session.client = await self._resolve_client(config, session)

                session.code_verifier, session.code_challenge = generate_pkce_pair()
                session.state_nonce = generate_state()
                listener.expect(session.state_nonce)

                session.advance(OAuthState.AWAITING_AUTHORIZATION)
                await self._launch_browser(self.build_authorization_url(session, config))
                code = await listener.wait_for_code()

                session.advance(OAuthState.EXCHANGING_CODE)
                tokens = await self.exchange_code(session, code)
                await self.tokens.save_tokens(config.id, tokens)

            session.advance(OAuthState.COMPLETE)
            logger.info(f"OAuth authorization complete for {config.id}")
            return tokens
        except OAuthError as e:
            failed_in = session.fail(e.message)
            e.state = e.state or failed_in.value
            logger.warning(f"OAuth authorization failed for {config.id} in {failed_in.value}: {e}")
            raise
        except httpx.HTTPError as e:
            failed_in = session.fail(str(e))
            logger.warning(f"OAuth network error for {config.id} in {failed_in.value}: {e}")
            raise OAuthError(
                f"Network error during OAuth for '{config.id}'",
                state=failed_in.value,
                original_error=e,
            ) from e
        except asyncio.CancelledError:
            session.fail("cancelled")
            raise
        finally:
            self._sessions.pop(config.id, None)

    async def discover_metadata(self, server_url: str) -> AuthorizationServerMetadata:
        """Fetch authorization server metadata, falling back to default endpoints."""
        url = f"{server_origin(server_url)}{WELL_KNOWN_PATH}"
        response = await self._request("GET", url, headers={"Accept": "application/json"})
        if response.status_code != 200:
            logger.info(
                f"No OAuth metadata at {url} (HTTP {response.status_code}), using default endpoints"
            )
            return AuthorizationServerMetadata.defaults_for(server_url)
        try:
            data = response.json()
            return AuthorizationServerMetadata(
                authorization_endpoint=data["authorization_endpoint"],
                token_endpoint=data["token_endpoint"],
                registration_endpoint=data.get("registration_endpoint"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise OAuthError(f"Malformed OAuth metadata at {url}", original_error=e) from e

    async def _resolve_client(self, config: ServerConfig, session: OAuthSession) -> OAuthClientInfo:
        requirement = config.oauth
        if requirement and requirement.client_id:
            return OAuthClientInfo(
                client_id=requirement.client_id,
                client_secret=requirement.client_secret,
                redirect_uri=session.redirect_uri,
                server_url=config.url,
            )

        stored = await self.tokens.get_client(config.id)
        if stored and stored.is_usable_for(config.url, session.redirect_uri):
            logger.debug(f"Reusing registered OAuth client for {config.id}")
            return stored

        client = await self.register_client(session)
        await self.tokens.save_client(config.id, client)
        return client

    def client_metadata(self, redirect_uri: str) -> dict[str, Any]:
        """OAuth client metadata for dynamic registration."""
        return {
            "redirect_uris": [redirect_uri],
            "client_name": self._client_name,
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }

    async def register_client(self, session: OAuthSession) -> OAuthClientInfo:
        """Register a client with the authorization server (RFC 7591)."""
        assert session.metadata is not None
        endpoint = session.metadata.registration_endpoint
        if not endpoint:
            raise OAuthError(
                f"'{session.server_id}' needs a client_id: server does not support dynamic registration"
            )

        response = await self._request(
            "POST", endpoint, json=self.client_metadata(session.redirect_uri)
        )
        if response.status_code not in (200, 201):
            raise OAuthError(
                f"Dynamic client registration failed (HTTP {response.status_code}): "
                f"{response.text[:200]}"
            )
        try:
            data = response.json()
            client_id = data["client_id"]
        except (ValueError, KeyError, TypeError) as e:
            raise OAuthError("Malformed client registration response", original_error=e) from e

        logger.info(f"Registered OAuth client for {session.server_id}")
        return OAuthClientInfo(
            client_id=client_id,
            client_secret=data.get("client_secret"),
            redirect_uri=session.redirect_uri,
            server_url=session.server_url,
            client_secret_expires_at=data.get("client_secret_expires_at") or None,
        )

    def build_authorization_url(self, session: OAuthSession, config: ServerConfig) -> str:
        assert session.metadata is not None and session.client is not None
        params = {
            "response_type": "code",
            "client_id": session.client.client_id,
            "redirect_uri": session.redirect_uri,
            "code_challenge": session.code_challenge,
            "code_challenge_method": "S256",
            "state": session.state_nonce,
        }
        if config.oauth and config.oauth.scope:
            params["scope"] = config.oauth.scope
        endpoint = session.metadata.authorization_endpoint
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    async def _launch_browser(self, url: str) -> None:
        logger.info("Opening browser for OAuth authorization")
        opened = self._open_browser(url)
        if inspect.isawaitable(opened):
            opened = await opened
        if opened is False:
            logger.warning(f"Could not open a browser; visit this URL to authorize: {url}")

    async def exchange_code(self, session: OAuthSession, code: str) -> OAuthTokens:
        """Exchange an authorization code plus PKCE verifier for tokens."""
        assert session.metadata is not None and session.client is not None
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": session.redirect_uri,
            "client_id": session.client.client_id,
            "code_verifier": session.code_verifier,
        }
        if session.client.client_secret:
            data["client_secret"] = session.client.client_secret
        return await self._token_request(session.metadata.token_endpoint, data)

    async def _token_request(
        self,
        token_endpoint: str,
        data: dict[str, str],
        previous: OAuthTokens | None = None,
    ) -> OAuthTokens:
        response = await self._request(
            "POST", token_endpoint, data=data, headers={"Accept": "application/json"}
        )
        if response.status_code != 200:
            raise OAuthError(
                f"Token request failed (HTTP {response.status_code}): {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise OAuthError("Token endpoint returned invalid JSON", original_error=e) from e
        return OAuthTokens.from_token_response(payload, token_endpoint, previous)

    async def refresh(self, config: ServerConfig, tokens: OAuthTokens) -> OAuthTokens:
        """
        Refresh an access token with the refresh_token grant.

        Raises:
            OAuthError: If no refresh token is available or the grant fails.
        """
        if not tokens.refresh_token:
            raise OAuthError(f"No refresh token stored for '{config.id}'")

        token_endpoint = tokens.token_endpoint
        data = {"grant_type": "refresh_token", "refresh_token": tokens.refresh_token}
        client = await self.tokens.get_client(config.id)
        if config.oauth and config.oauth.client_id:
            data["client_id"] = config.oauth.client_id
            if config.oauth.client_secret:
                data["client_secret"] = config.oauth.client_secret
        elif client:
            data["client_id"] = client.client_id
            if client.client_secret:
                data["client_secret"] = client.client_secret

        try:
            if not token_endpoint:
                token_endpoint = (await self.discover_metadata(config.url or "")).token_endpoint
            refreshed = await self._token_request(token_endpoint, data, previous=tokens)
        except httpx.HTTPError as e:
            raise OAuthError(f"Network error refreshing token for '{config.id}'", original_error=e) from e
        await self.tokens.save_tokens(config.id, refreshed)
        logger.info(f"Refreshed OAuth token for {config.id}")
        return refreshed

    async def authorization_headers(self, config: ServerConfig) -> dict[str, str]:
        """
        Bearer header for a remote server, refreshing an expired token first.

        Returns an empty dict when no usable token exists; the connect
        attempt then surfaces AuthorizationRequired if the server needs one.
        """
        if not config.transport_type.is_remote:
            return {}
        tokens = await self.tokens.get_tokens(config.id)
        if tokens is None:
            return {}
        if tokens.is_expired(margin=EXPIRY_MARGIN):
            if not tokens.refresh_token:
                logger.info(f"OAuth token for {config.id} expired and cannot be refreshed")
                return {}
            try:
                tokens = await self.refresh(config, tokens)
            except OAuthError as e:
                logger.warning(f"OAuth token refresh failed for {config.id}: {e}")
                return {}
        return {"Authorization": f"{tokens.token_type.capitalize()} {tokens.access_token}"}
