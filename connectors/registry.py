"""
ConnectorRegistry — the catalog of every provider this process knows.

Built once at startup by ``build_registry()``, frozen, and then handed to the
components that need lookups.  After ``freeze()`` nothing mutates it, so
concurrent reads need no locking.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from config.settings import Settings, config
from connectors.base import BaseConnector
from connectors.errors import DuplicateProviderError, RegistryFrozenError, UnknownProvider
from connectors.github import GitHubConnector
from connectors.gmail import GmailConnector
from connectors.openai import OpenAIConnector
from connectors.slack import SlackConnector
from connectors.schemas import ToolDefinition

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Write-once, read-many catalog of connectors keyed by provider id."""

    def __init__(self, connectors: Iterable[BaseConnector] = ()) -> None:
        self._connectors: Dict[str, BaseConnector] = {}
        self._frozen = False
        self._initialized = False
        for connector in connectors:
            self.register(connector)

    def register(self, connector: BaseConnector) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register {connector.provider_id}: registry is frozen"
            )
        if connector.provider_id in self._connectors:
            raise DuplicateProviderError(
                f"Integration {connector.provider_id} is already registered"
            )
        self._connectors[connector.provider_id] = connector
        logger.info(
            "Connector registered: %s (%s)",
            connector.display_name,
            connector.provider_id,
        )

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    async def initialize_all(self) -> None:
        """Initialise every configured connector; one failure doesn't stop startup."""
        if self._initialized:
            return
        for connector in self._connectors.values():
            if not connector.is_configured():
                logger.warning(
                    "Connector %s skipped — not configured (missing %s)",
                    connector.provider_id,
                    ", ".join(connector.required_settings) or "settings",
                )
                continue
            try:
                await connector.initialize()
                logger.info("Connector ready: %s", connector.provider_id)
            except Exception:
                logger.exception("Connector %s failed to initialise", connector.provider_id)
        self._initialized = True

    # ── Lookups ─────────────────────────────────────────────────────────

    def get(self, provider_id: str) -> Optional[BaseConnector]:
        return self._connectors.get(provider_id)

    def require(self, provider_id: str) -> BaseConnector:
        connector = self._connectors.get(provider_id)
        if connector is None:
            raise UnknownProvider(provider_id)
        return connector

    def list(self) -> List[BaseConnector]:
        """All connectors in registration order."""
        return list(self._connectors.values())

    def list_configured(self) -> List[BaseConnector]:
        return [c for c in self._connectors.values() if c.is_configured()]

    def get_by_category(self, category: str) -> List[BaseConnector]:
        return [c for c in self._connectors.values() if c.category == category]

    def all_tools(self) -> List[ToolDefinition]:
        tools: List[ToolDefinition] = []
        for connector in self.list_configured():
            tools.extend(connector.list_tools())
        return tools

    def find_tool(self, tool_name: str) -> Optional[Tuple[BaseConnector, ToolDefinition]]:
        for connector in self._connectors.values():
            for tool in connector.list_tools():
                if tool.name == tool_name:
                    return connector, tool
        return None

    def describe(self) -> List[Dict[str, Any]]:
        return [c.describe() for c in self._connectors.values()]


def build_registry(
    settings: Settings = config,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectorRegistry:
    """Register all known connectors — add new ones here — and freeze."""
    registry = ConnectorRegistry(
        [
            GmailConnector(settings, transport),
            GitHubConnector(settings, transport),
            SlackConnector(settings, transport),
            OpenAIConnector(settings, transport),
        ]
    )
    registry.freeze()
    return registry
