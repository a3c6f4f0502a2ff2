"""
Shared fixtures: a temp-file SQLite database, an encryption codec and two
in-memory connectors ("mail" with OAuth, "echo" with no auth).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from config.settings import Settings
from connectors.base import BaseConnector, ToolHandler
from connectors.credential_store import CredentialStore
from connectors.encryption import EnvelopeCodec
from connectors.errors import AuthExchangeError
from connectors.registry import ConnectorRegistry
from connectors.schemas import AuthKind, Credential, TokenGrant, ToolDefinition, ToolParameter
from connectors.service import IntegrationService
from database.helpers import init_models
from database.session import build_engine, build_session_factory

TEST_KEY = "0f" * 32


def hour_from_now() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=1)


class FakeMailConnector(BaseConnector):
    """OAuth connector that never leaves the process."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.grant = TokenGrant(
            access_token="tok-1",
            refresh_token="ref-1",
            expires_at=hour_from_now(),
            metadata={"email": "ops@acme.test"},
        )
        self.exchanged_codes: List[str] = []
        self.revoked: List[Any] = []
        self.refresh_mock = AsyncMock(
            return_value=TokenGrant(access_token="tok-2", expires_at=hour_from_now())
        )

    @property
    def provider_id(self) -> str:
        return "mail"

    @property
    def display_name(self) -> str:
        return "Mail"

    @property
    def category(self) -> str:
        return "email"

    @property
    def auth_kind(self) -> AuthKind:
        return AuthKind.OAUTH2

    def get_auth_url(self, tenant_id: str, state: str) -> str:
        return f"https://mail.example/authorize?state={state}"

    async def handle_callback(self, code: str, state: str) -> TokenGrant:
        self.exchanged_codes.append(code)
        if code == "bad-code":
            raise AuthExchangeError("mail rejected the authorization code")
        return self.grant.model_copy(deep=True)

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        return await self.refresh_mock(credential)

    async def revoke(self, credential: Credential) -> bool:
        self.revoked.append(credential.id)
        return True

    def list_tools(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name="mail_send",
                description="Send a message",
                category="email",
                provider_id=self.provider_id,
                parameters=[ToolParameter(name="to", type="string", required=True)],
            ),
            ToolDefinition(
                name="mail_explode",
                description="Always fails",
                category="email",
                provider_id=self.provider_id,
            ),
        ]

    def tool_handlers(self) -> Dict[str, ToolHandler]:
        return {"mail_send": self._send, "mail_explode": self._explode}

    async def _send(self, params: Dict[str, Any], credential: Optional[Credential]) -> Dict[str, Any]:
        return {"to": params.get("to"), "token": credential.access_token, "account": credential.account_label}

    async def _explode(self, params: Dict[str, Any], credential: Optional[Credential]) -> None:
        raise RuntimeError("mailbox on fire")


class EchoConnector(BaseConnector):
    """Connector with no authentication at all."""

    @property
    def provider_id(self) -> str:
        return "echo"

    @property
    def display_name(self) -> str:
        return "Echo"

    @property
    def category(self) -> str:
        return "utility"

    @property
    def auth_kind(self) -> AuthKind:
        return AuthKind.NONE

    def list_tools(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(name="echo", description="Echo params", category="utility", provider_id="echo")
        ]

    def tool_handlers(self) -> Dict[str, ToolHandler]:
        return {"echo": self._echo}

    async def _echo(self, params: Dict[str, Any], credential: Optional[Credential]) -> Dict[str, Any]:
        return {"params": params, "had_credential": credential is not None}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'hub.db'}",
        encryption_key=TEST_KEY,
        oauth_state_secret="test-state-secret",
        oauth_redirect_base="http://hub.test",
        app_url="http://dashboard.test",
        google_client_id="google-id",
        google_client_secret="google-secret",
        github_client_id="github-id",
        github_client_secret="github-secret",
        slack_client_id="slack-id",
        slack_client_secret="slack-secret",
        refresh_timeout_seconds=2.0,
    )


@pytest.fixture
def codec(settings: Settings) -> EnvelopeCodec:
    return EnvelopeCodec.from_settings(settings)


@pytest_asyncio.fixture
async def engine(settings: Settings):
    engine = build_engine(settings.database_url)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, codec: EnvelopeCodec) -> CredentialStore:
    return CredentialStore(session_factory, codec)


@pytest.fixture
def mail(settings: Settings) -> FakeMailConnector:
    return FakeMailConnector(settings)


@pytest.fixture
def registry(settings: Settings, mail: FakeMailConnector) -> ConnectorRegistry:
    registry = ConnectorRegistry([mail, EchoConnector(settings)])
    registry.freeze()
    return registry


@pytest.fixture
def service(registry: ConnectorRegistry, store: CredentialStore, settings: Settings) -> IntegrationService:
    return IntegrationService(registry, store, settings)

