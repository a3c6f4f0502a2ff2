"""
IntegrationService — the facade the HTTP layer talks to.

Wires the registry, credential store, OAuth coordinator, refresh manager and
tool gateway together.  One instance is built at startup and kept on
``app.state``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from config.settings import Settings, config
from connectors.base import BaseConnector
from connectors.credential_store import CredentialStore
from connectors.encryption import mask_credentials
from connectors.errors import (
    ConfigurationError,
    DecryptionError,
    IntegrationError,
    NotFoundError,
    ProviderCallError,
    ReauthRequired,
    RefreshError,
)
from connectors.gateway import ToolGateway
from connectors.oauth import CallbackOutcome, OAuthCoordinator, OAuthStateSigner
from connectors.registry import ConnectorRegistry
from connectors.schemas import (
    AccountSummary,
    AuthKind,
    ConnectionCheck,
    ConnectionHealth,
    ConnectionStatus,
    CredentialStatus,
    HealthReport,
    ToolDefinition,
    ToolResult,
)
from connectors.token_manager import TokenRefreshManager

logger = logging.getLogger(__name__)


class IntegrationService:
    def __init__(
        self,
        registry: ConnectorRegistry,
        store: CredentialStore,
        settings: Settings = config,
        signer: Optional[OAuthStateSigner] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings
        self.oauth = OAuthCoordinator(
            registry,
            store,
            signer
            or OAuthStateSigner(settings.oauth_state_secret, settings.oauth_state_ttl_seconds),
        )
        self.tokens = TokenRefreshManager(registry, store, settings)
        self.gateway = ToolGateway(registry, store, self.tokens)

    # ── Catalog ─────────────────────────────────────────────────────────

    def list_providers(self) -> List[Dict[str, Any]]:
        return self.registry.describe()

    def list_tools(self, provider_id: Optional[str] = None) -> List[ToolDefinition]:
        if provider_id is None:
            return self.registry.all_tools()
        return self.registry.require(provider_id).list_tools()

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def start_auth(self, tenant_id: str, provider_id: str) -> str:
        """Return the provider URL the tenant's browser should be sent to."""
        return self.oauth.start(tenant_id, provider_id).url

    async def handle_callback(
        self,
        provider_id: str,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> CallbackOutcome:
        return await self.oauth.complete_callback(provider_id, code=code, state=state, error=error)

    def callback_redirect_url(self, outcome: CallbackOutcome) -> str:
        """Dashboard URL for the end of the flow; failures carry only the kind."""
        if outcome.success:
            params = {"connected": outcome.provider_id}
            if outcome.account_label:
                params["account"] = outcome.account_label
        else:
            params = {"error": outcome.error_kind or "oauth_failed", "provider": outcome.provider_id}
        return f"{self.settings.app_url.rstrip('/')}/settings?{urlencode(params)}"

    # ── Connections ─────────────────────────────────────────────────────

    async def get_status(self, tenant_id: str, provider_id: str) -> ConnectionStatus:
        self.registry.require(provider_id)
        accounts = await self.store.list_accounts(tenant_id, provider_id)
        return ConnectionStatus(connected=bool(accounts), accounts=accounts)

    async def list_connections(self, tenant_id: str) -> Dict[str, ConnectionStatus]:
        """Every provider the tenant has at least one active account with."""
        grouped: Dict[str, List[AccountSummary]] = {}
        for account in await self.store.list_accounts(tenant_id):
            grouped.setdefault(account.provider_id, []).append(account)
        return {
            provider_id: ConnectionStatus(connected=True, accounts=accounts)
            for provider_id, accounts in grouped.items()
        }

    async def connect_api_key(
        self,
        tenant_id: str,
        provider_id: str,
        secrets: Dict[str, str],
        account_label: Optional[str] = None,
    ) -> AccountSummary:
        """Validate manually entered secrets and store them as a credential."""
        connector = self.registry.require(provider_id)
        if connector.auth_kind != AuthKind.API_KEY:
            raise ConfigurationError(f"Integration {provider_id} does not accept API keys")

        logger.debug("Validating %s credentials %s", provider_id, mask_credentials(secrets))
        grant = await connector.validate_credentials(secrets)
        label = account_label if account_label is not None else grant.account_label
        credential = await self.store.upsert(tenant_id, provider_id, label, grant)
        logger.info("API key connected: tenant=%s provider=%s", tenant_id, provider_id)
        return await self._summary(tenant_id, provider_id, str(credential.id))

    async def set_primary(self, tenant_id: str, provider_id: str, account_id: str) -> AccountSummary:
        self.registry.require(provider_id)
        return await self.store.mark_primary(tenant_id, account_id, provider_id)

    async def disconnect(self, tenant_id: str, provider_id: str, account_id: str) -> AccountSummary:
        """
        Revoke at the provider (best effort) and soft-delete the account.
        If it was primary, the oldest remaining account becomes primary.
        """
        connector = self.registry.require(provider_id)
        try:
            credential = await self.store.get_active(tenant_id, account_id)
        except DecryptionError:
            # Unreadable secrets cannot be revoked, but the record can still go.
            credential = None

        if credential is not None:
            if credential.provider_id != provider_id:
                raise NotFoundError(f"Credential {account_id} not found")
            try:
                revoked = await connector.revoke(credential)
                logger.debug("Revocation for %s credential %s: %s", provider_id, account_id, revoked)
            except Exception:
                logger.warning(
                    "Revoking %s credential %s failed; deactivating anyway",
                    provider_id,
                    account_id,
                    exc_info=True,
                )

        return await self.store.deactivate(tenant_id, account_id, provider_id)

    # ── Health ──────────────────────────────────────────────────────────

    async def test_connection(self, tenant_id: str, provider_id: str, account_id: str) -> ConnectionCheck:
        """
        Validate one stored account against its provider and record the
        result on the credential (``active``, or ``error`` with the message).
        """
        connector = self.registry.require(provider_id)
        account = await self._summary(tenant_id, provider_id, account_id)
        return await self._check(connector, tenant_id, account)

    async def health(self, tenant_id: str) -> HealthReport:
        """Check every active account of the tenant, one after another."""
        checks: List[ConnectionCheck] = []
        for account in await self.store.list_accounts(tenant_id):
            connector = self.registry.get(account.provider_id)
            if connector is None:
                checks.append(
                    ConnectionCheck(
                        account_id=account.id,
                        provider_id=account.provider_id,
                        account_label=account.account_label,
                        health=ConnectionHealth.UNHEALTHY,
                        message=f"Unknown integration: {account.provider_id}",
                        error_kind="unknown_provider",
                    )
                )
                continue
            checks.append(await self._check(connector, tenant_id, account))

        report = HealthReport.from_checks(checks)
        logger.info(
            "Health check for tenant %s: %d healthy, %d unhealthy, %d expired",
            tenant_id,
            report.healthy,
            report.unhealthy,
            report.expired,
        )
        return report

    async def _check(
        self,
        connector: BaseConnector,
        tenant_id: str,
        account: AccountSummary,
    ) -> ConnectionCheck:
        started = time.perf_counter()
        try:
            credential = await self.store.get_active(tenant_id, account.id)
            # Goes through the refresh lease like any tool call would.
            credential = await self.tokens.ensure_fresh(credential)
            details = await connector.check_connection(credential)
        except httpx.HTTPError as exc:
            error: IntegrationError = ProviderCallError(f"{connector.display_name} unreachable: {exc}")
        except IntegrationError as exc:
            error = exc
        else:
            await self.store.mark_status(tenant_id, account.id, CredentialStatus.ACTIVE)
            return ConnectionCheck(
                account_id=account.id,
                provider_id=account.provider_id,
                account_label=account.account_label,
                health=ConnectionHealth.HEALTHY,
                message=f"{connector.display_name} connection is working",
                latency_ms=int((time.perf_counter() - started) * 1000),
                details=details,
            )

        if not isinstance(error, (RefreshError, ReauthRequired)):
            # Refresh failures are already recorded by the token manager.
            await self.store.mark_status(tenant_id, account.id, CredentialStatus.ERROR, error.message)
        logger.warning(
            "Connection check failed: tenant=%s provider=%s account=%s (%s)",
            tenant_id,
            account.provider_id,
            account.id,
            error.kind,
        )
        return ConnectionCheck(
            account_id=account.id,
            provider_id=account.provider_id,
            account_label=account.account_label,
            health=ConnectionHealth.EXPIRED if error.kind == "reauth_required" else ConnectionHealth.UNHEALTHY,
            message=error.message,
            error_kind=error.kind,
            latency_ms=int((time.perf_counter() - started) * 1000),
        )

    # ── Tools ───────────────────────────────────────────────────────────

    async def invoke_tool(
        self,
        tenant_id: str,
        tool_name: str,
        params: Optional[Dict[str, Any]] = None,
        provider_id: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> ToolResult:
        if provider_id is None:
            return await self.gateway.invoke_by_tool(tenant_id, tool_name, params, account_id)
        return await self.gateway.invoke(tenant_id, provider_id, tool_name, params, account_id)

    async def _summary(self, tenant_id: str, provider_id: str, credential_id: str) -> AccountSummary:
        for account in await self.store.list_accounts(tenant_id, provider_id):
            if str(account.id) == credential_id:
                return account
        raise NotFoundError(f"Credential {credential_id} not found")
