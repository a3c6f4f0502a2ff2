"""
Token manager — keeps OAuth access tokens fresh.

This is the single interface the gateway uses before handing a credential
to a tool.  Tokens are only refreshed once they have actually expired, and
at most one refresh per credential is ever in flight: concurrent callers
share the result of the refresh that is already running.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict

from config.settings import Settings, config
from connectors.base import BaseConnector
from connectors.credential_store import CredentialStore
from connectors.errors import ReauthRequired, RefreshError
from connectors.registry import ConnectorRegistry
from connectors.schemas import Credential, CredentialStatus, TokenGrant

logger = logging.getLogger(__name__)


class TokenRefreshManager:
    """Per-credential single-flight token refresh."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        store: CredentialStore,
        settings: Settings = config,
    ) -> None:
        self._registry = registry
        self._store = store
        self._settings = settings
        self._in_flight: Dict[uuid.UUID, asyncio.Task[Credential]] = {}

    def _expired(self, credential: Credential) -> bool:
        return credential.is_expired(skew_seconds=self._settings.token_expiry_skew_seconds)

    async def ensure_fresh(self, credential: Credential) -> Credential:
        """
        Return ``credential`` untouched while its token is valid; otherwise
        refresh it (or join the refresh already running for it).

        Raises ``ReauthRequired`` when there is nothing to refresh with and
        ``RefreshError`` when the provider refuses or cannot be reached.
        """
        if not self._expired(credential):
            return credential

        if not credential.refresh_token:
            await self._store.mark_status(
                credential.tenant_id,
                credential.id,
                CredentialStatus.REAUTH_REQUIRED,
                "Token expired and no refresh token available",
            )
            raise ReauthRequired(
                f"The {credential.provider_id} connection has expired. Please reconnect."
            )

        task = self._in_flight.get(credential.id)
        if task is None:
            task = asyncio.create_task(self._refresh(credential))
            self._in_flight[credential.id] = task
            task.add_done_callback(lambda t, key=credential.id: self._release(key, t))
        else:
            logger.debug("Joining in-flight refresh for credential %s", credential.id)

        # A caller giving up must not cancel the refresh other callers await.
        return await asyncio.shield(task)

    def in_flight(self) -> int:
        return len(self._in_flight)

    def _release(self, key: uuid.UUID, task: asyncio.Task[Credential]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away.
            task.exception()

    async def _refresh(self, credential: Credential) -> Credential:
        """Body of the lease: the only writer of refreshed token fields."""
        connector = self._registry.require(credential.provider_id)

        # Another lease holder may have refreshed it since the caller read it.
        current = await self._store.get_active(credential.tenant_id, credential.id)
        if not self._expired(current):
            logger.debug("Credential %s already refreshed", current.id)
            return current
        if not current.refresh_token:
            raise ReauthRequired(
                f"The {current.provider_id} connection has expired. Please reconnect."
            )

        try:
            grant = await self._call_provider(connector, current)
        except RefreshError as exc:
            if exc.transient:
                logger.warning(
                    "Transient refresh failure for %s/%s: %s",
                    current.provider_id,
                    current.tenant_id,
                    exc.message,
                )
                await self._store.mark_status(
                    current.tenant_id, current.id, CredentialStatus.ERROR, exc.message
                )
            else:
                logger.warning(
                    "Refresh token rejected for %s/%s; re-authorization required: %s",
                    current.provider_id,
                    current.tenant_id,
                    exc.message,
                )
                await self._store.mark_status(
                    current.tenant_id,
                    current.id,
                    CredentialStatus.REAUTH_REQUIRED,
                    exc.message,
                )
            raise

        refreshed = await self._store.update_tokens(current.tenant_id, current.id, grant)
        logger.info("Refreshed %s token for tenant %s", current.provider_id, current.tenant_id)
        return refreshed

    async def _call_provider(self, connector: BaseConnector, current: Credential) -> TokenGrant:
        """The provider refresh call, bounded by ``refresh_timeout_seconds``."""
        timeout = self._settings.refresh_timeout_seconds
        try:
            return await asyncio.wait_for(connector.refresh_token(current), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Token refresh timed out after %ss: provider=%s credential=%s",
                timeout,
                current.provider_id,
                current.id,
            )
            raise RefreshError(
                f"{current.provider_id} token refresh timed out", transient=True
            ) from exc
