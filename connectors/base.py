"""
BaseConnector — the capability interface every provider implements.

Every provider (Gmail, GitHub, Slack, OpenAI, …) subclasses this.  OAuth
providers implement the three OAuth hooks; every provider lists its tools and
maps each tool name to an async handler.  ``execute_tool`` itself lives here
so that no provider can let an exception escape a tool call.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from config.settings import Settings, config
from connectors.errors import (
    AuthExchangeError,
    ConfigurationError,
    IntegrationError,
    RefreshError,
)
from connectors.schemas import AuthKind, Credential, TokenGrant, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], Optional[Credential]], Awaitable[Any]]

# Error codes a token endpoint may return that are worth retrying later
_TRANSIENT_REFRESH_ERRORS = {"temporarily_unavailable", "server_error", "ratelimited"}


class BaseConnector(ABC):
    """Abstract base for all provider connectors."""

    def __init__(
        self,
        settings: Settings = config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Unique slug: 'gmail', 'slack', 'github', 'openai'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def category(self) -> str:
        """'email', 'communication', 'developer', 'ai', …"""
        ...

    @property
    @abstractmethod
    def auth_kind(self) -> AuthKind:
        ...

    @property
    def description(self) -> str:
        return ""

    @property
    def required_settings(self) -> List[str]:
        """Names of ``Settings`` fields that must be non-empty."""
        return []

    @property
    def scopes(self) -> List[str]:
        return []

    @property
    def credential_fields(self) -> List[str]:
        """Secret fields a tenant enters by hand (API-key providers)."""
        return []

    # ── Lifecycle ───────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return all(getattr(self.settings, name, None) for name in self.required_settings)

    async def initialize(self) -> None:
        """Called once at startup for configured providers."""
        return None

    # ── OAuth flow ──────────────────────────────────────────────────────

    @property
    def supports_oauth(self) -> bool:
        return self.auth_kind == AuthKind.OAUTH2

    def get_auth_url(self, tenant_id: str, state: str) -> str:
        """
        Build the provider's authorization URL embedding ``state``.

        Only OAuth providers override this.
        """
        raise ConfigurationError(f"Integration {self.provider_id} does not support OAuth")

    async def handle_callback(self, code: str, state: str) -> TokenGrant:
        """Exchange an authorization code; raises ``AuthExchangeError``."""
        raise ConfigurationError(f"Integration {self.provider_id} does not support OAuth")

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        """Exchange a refresh token; raises ``RefreshError``."""
        raise RefreshError(
            f"Integration {self.provider_id} cannot refresh tokens", transient=False
        )

    async def revoke(self, credential: Credential) -> bool:
        """
        Revoke the credential at the provider (optional, best effort).
        Returns True on success, False if unsupported.
        """
        return False

    async def validate_credentials(self, secrets: Dict[str, str]) -> TokenGrant:
        """
        Check manually entered secrets and describe the account they belong
        to.  API-key providers override this to call the provider.
        """
        missing = [f for f in self.credential_fields if not secrets.get(f)]
        if missing:
            raise AuthExchangeError(f"Missing credential fields: {', '.join(missing)}")
        return TokenGrant(extra_secrets=dict(secrets))

    async def check_connection(self, credential: Credential) -> Dict[str, Any]:
        """
        Confirm a stored credential still works and return details about it.

        API-key credentials are re-validated against the provider.  An OAuth
        credential that reaches this point already has a fresh token, which
        is all the base check can say about it.
        """
        if self.auth_kind == AuthKind.API_KEY:
            grant = await self.validate_credentials(credential.extra_secrets)
            return dict(grant.metadata)
        expires_at = credential.expires_at.isoformat() if credential.expires_at else None
        return {"tokenExpiresAt": expires_at}

    # ── Tools ───────────────────────────────────────────────────────────

    @abstractmethod
    def list_tools(self) -> List[ToolDefinition]:
        ...

    @abstractmethod
    def tool_handlers(self) -> Dict[str, ToolHandler]:
        """Map of tool name → ``async handler(params, credential)``."""
        ...

    async def execute_tool(
        self,
        tool_name: str,
        params: Dict[str, Any],
        credential: Optional[Credential],
    ) -> ToolResult:
        """Run a tool.  Always returns a ``ToolResult``; never raises."""
        handler = self.tool_handlers().get(tool_name)
        if handler is None:
            return ToolResult.fail(
                f"Unknown tool: {tool_name}",
                kind="unknown_tool",
                integration=self.provider_id,
                tool=tool_name,
            )

        started = time.perf_counter()
        try:
            data = await handler(params or {}, credential)
        except IntegrationError as exc:
            logger.warning("%s.%s failed: %s", self.provider_id, tool_name, exc.message)
            return ToolResult.fail(
                exc.message,
                kind=exc.kind,
                integration=self.provider_id,
                tool=tool_name,
            )
        except Exception as exc:
            logger.warning("%s.%s failed: %s", self.provider_id, tool_name, exc, exc_info=True)
            return ToolResult.fail(
                str(exc) or exc.__class__.__name__,
                integration=self.provider_id,
                tool=tool_name,
            )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return ToolResult.ok(
            data,
            integration=self.provider_id,
            tool=tool_name,
            duration_ms=elapsed_ms,
        )

    # ── Helpers ─────────────────────────────────────────────────────────

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        """HTTP client with the configured (finite) timeout."""
        return httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds,
            transport=self._transport,
            **kwargs,
        )

    def _redirect_uri(self) -> str:
        return self.settings.callback_url(self.provider_id)

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.provider_id,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category,
            "auth_kind": self.auth_kind.value,
            "scopes": self.scopes,
            "credential_fields": self.credential_fields,
            "configured": self.is_configured(),
        }


def classify_refresh_response(provider_id: str, response: httpx.Response) -> None:
    """
    Raise the right ``RefreshError`` for a failed token-endpoint response.

    5xx and 429 are transient; every other 4xx (and an OAuth
    ``invalid_grant``) means the refresh token is no longer usable.
    """
    if response.is_success:
        return
    if response.status_code >= 500 or response.status_code == 429:
        raise RefreshError(
            f"{provider_id} token endpoint returned {response.status_code}", transient=True
        )
    error_code = ""
    try:
        error_code = response.json().get("error", "")
    except ValueError:
        pass
    raise RefreshError(
        f"{provider_id} rejected the refresh token ({error_code or response.status_code})",
        transient=False,
    )


def refresh_error_from_payload(provider_id: str, payload: Dict[str, Any]) -> Optional[RefreshError]:
    """Map an error carried in a 200 OK token response (GitHub, Slack)."""
    error_code = payload.get("error")
    if not error_code:
        return None
    transient = error_code in _TRANSIENT_REFRESH_ERRORS
    detail = payload.get("error_description") or error_code
    return RefreshError(f"{provider_id} token refresh error: {detail}", transient=transient)


def transport_refresh_error(provider_id: str, exc: httpx.HTTPError) -> RefreshError:
    return RefreshError(f"{provider_id} token endpoint unreachable: {exc}", transient=True)


def refresh_payload(provider_id: str, response: httpx.Response) -> Dict[str, Any]:
    """Decode a successful token-endpoint body; garbage is a transient failure."""
    try:
        data = response.json()
    except ValueError as exc:
        raise RefreshError(
            f"{provider_id} token endpoint returned a non-JSON body", transient=True
        ) from exc
    if not isinstance(data, dict):
        raise RefreshError(
            f"{provider_id} token endpoint returned an unexpected body", transient=True
        )
    return data


def refreshed_grant(provider_id: str, data: Dict[str, Any], default_expires_in: int) -> TokenGrant:
    """Build the grant from a refresh response that carried no error."""
    access_token = data.get("access_token")
    if not access_token:
        raise RefreshError(
            f"{provider_id} token endpoint returned no access_token", transient=True
        )
    return TokenGrant(
        access_token=access_token,
        refresh_token=data.get("refresh_token"),
        expires_at=TokenGrant.expiry_from(data.get("expires_in") or default_expires_in),
    )
