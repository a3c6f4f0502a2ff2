"""
Tool dispatch gateway — the boundary where failures become results.

``invoke`` resolves the provider, picks the tenant's credential (primary
unless an account is named), makes sure its token is fresh and runs the
tool.  Everything raised below this point comes back as a failed
``ToolResult`` with a stable ``error_kind``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from connectors.credential_store import CredentialStore
from connectors.errors import IntegrationError, NotConnected, NotFoundError
from connectors.registry import ConnectorRegistry
from connectors.schemas import AuthKind, Credential, ToolResult
from connectors.token_manager import TokenRefreshManager

logger = logging.getLogger(__name__)


class ToolGateway:
    """Routes tool invocations to the right connector with a live credential."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        store: CredentialStore,
        tokens: TokenRefreshManager,
    ) -> None:
        self._registry = registry
        self._store = store
        self._tokens = tokens

    async def invoke(
        self,
        tenant_id: str,
        provider_id: str,
        tool_name: str,
        params: Optional[Dict[str, Any]] = None,
        account_id: Optional[str] = None,
    ) -> ToolResult:
        connector = self._registry.get(provider_id)
        if connector is None:
            return ToolResult.fail(
                f"Unknown integration: {provider_id}",
                kind="unknown_provider",
                integration=provider_id,
                tool=tool_name,
            )

        credential: Optional[Credential] = None
        try:
            if connector.auth_kind != AuthKind.NONE:
                credential = await self._resolve_credential(tenant_id, provider_id, account_id)
                credential = await self._tokens.ensure_fresh(credential)
            result = await connector.execute_tool(tool_name, params or {}, credential)
        except IntegrationError as exc:
            logger.warning(
                "Tool %s for tenant %s failed (%s): %s",
                tool_name,
                tenant_id,
                exc.kind,
                exc.message,
            )
            return ToolResult.fail(
                exc.message, kind=exc.kind, integration=provider_id, tool=tool_name
            )
        except Exception:
            logger.exception("Unexpected error invoking %s.%s", provider_id, tool_name)
            return ToolResult.fail(
                f"Internal error while running {tool_name}",
                kind="internal_error",
                integration=provider_id,
                tool=tool_name,
            )

        if credential is not None and result.success:
            await self._touch(tenant_id, credential)
        return result

    async def invoke_by_tool(
        self,
        tenant_id: str,
        tool_name: str,
        params: Optional[Dict[str, Any]] = None,
        account_id: Optional[str] = None,
    ) -> ToolResult:
        """Invoke a tool without naming its provider."""
        match = self._registry.find_tool(tool_name)
        if match is None:
            return ToolResult.fail(
                f"Unknown tool: {tool_name}", kind="unknown_tool", tool=tool_name
            )
        connector, _ = match
        return await self.invoke(tenant_id, connector.provider_id, tool_name, params, account_id)

    async def _resolve_credential(
        self,
        tenant_id: str,
        provider_id: str,
        account_id: Optional[str],
    ) -> Credential:
        # Pick the account from the non-secret view; only that row is decrypted.
        accounts = await self._store.list_accounts(tenant_id, provider_id)
        if not accounts:
            raise NotConnected(tenant_id, provider_id)
        if account_id is None:
            target = accounts[0]
        else:
            target = next((a for a in accounts if str(a.id) == str(account_id)), None)
            if target is None:
                raise NotFoundError(f"Account {account_id} is not connected to {provider_id}")
        return await self._store.get_active(tenant_id, target.id)

    async def _touch(self, tenant_id: str, credential: Credential) -> None:
        try:
            await self._store.touch(tenant_id, credential.id)
        except SQLAlchemyError:
            logger.warning("Could not record last use of credential %s", credential.id, exc_info=True)
