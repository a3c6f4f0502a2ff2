"""
End-to-end tests through IntegrationService (real store, fake providers).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from connectors.errors import (
    AuthExchangeError,
    ConfigurationError,
    NotFoundError,
    ProviderCallError,
    UnknownProvider,
)
from connectors.openai import OpenAIConnector
from connectors.registry import ConnectorRegistry
from connectors.schemas import ConnectionHealth, CredentialStatus, TokenGrant
from connectors.service import IntegrationService
from database.models import IntegrationCredential


def _grant(access_token, hours=1.0, refresh_token=None):
    return TokenGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=hours),
    )


async def _connect(service, tenant_id="acme", label="ops@acme.test", mail=None):
    if mail is not None:
        mail.grant.metadata = {"email": label}
    url = await service.start_auth(tenant_id, "mail")
    state = parse_qs(urlparse(url).query)["state"][0]
    return await service.handle_callback("mail", code="c0de", state=state)


class TestConnectFlow:
    @pytest.mark.asyncio
    async def test_acme_connects_mail_and_status_shows_it(self, service):
        outcome = await _connect(service)
        assert outcome.success

        status = await service.get_status("acme", "mail")
        assert status.connected
        assert [a.account_label for a in status.accounts] == ["ops@acme.test"]
        assert status.accounts[0].is_primary

    @pytest.mark.asyncio
    async def test_status_for_unknown_provider(self, service):
        with pytest.raises(UnknownProvider):
            await service.get_status("acme", "nope")

    @pytest.mark.asyncio
    async def test_status_when_not_connected(self, service):
        status = await service.get_status("acme", "mail")
        assert not status.connected
        assert status.accounts == []

    @pytest.mark.asyncio
    async def test_redirect_urls(self, service):
        outcome = await _connect(service)
        ok = urlparse(service.callback_redirect_url(outcome))
        assert (ok.scheme, ok.netloc, ok.path) == ("http", "dashboard.test", "/settings")
        assert parse_qs(ok.query) == {"connected": ["mail"], "account": ["ops@acme.test"]}

        denied = await service.handle_callback("mail", error="access_denied: user said <b>no</b>")
        failed = parse_qs(urlparse(service.callback_redirect_url(denied)).query)
        assert failed == {"error": ["oauth_denied"], "provider": ["mail"]}


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_two_account_disconnect(self, service, mail):
        await _connect(service, label="a@acme.test", mail=mail)
        await _connect(service, label="b@acme.test", mail=mail)
        status = await service.get_status("acme", "mail")
        first = next(a for a in status.accounts if a.account_label == "a@acme.test")
        assert first.is_primary

        await service.disconnect("acme", "mail", str(first.id))

        status = await service.get_status("acme", "mail")
        assert [a.account_label for a in status.accounts] == ["b@acme.test"]
        assert status.accounts[0].is_primary
        assert mail.revoked == [first.id]

    @pytest.mark.asyncio
    async def test_revocation_failure_does_not_block_disconnect(self, service, mail):
        await _connect(service)
        [account] = (await service.get_status("acme", "mail")).accounts

        async def broken_revoke(credential):
            raise httpx.ConnectError("provider down")

        mail.revoke = broken_revoke
        await service.disconnect("acme", "mail", str(account.id))
        assert not (await service.get_status("acme", "mail")).connected

    @pytest.mark.asyncio
    async def test_disconnect_with_wrong_provider(self, service):
        await _connect(service)
        [account] = (await service.get_status("acme", "mail")).accounts
        with pytest.raises(NotFoundError):
            await service.disconnect("acme", "echo", str(account.id))


class TestPrimaryAndListing:
    @pytest.mark.asyncio
    async def test_set_primary(self, service, mail):
        await _connect(service, label="a@acme.test", mail=mail)
        await _connect(service, label="b@acme.test", mail=mail)
        status = await service.get_status("acme", "mail")
        second = next(a for a in status.accounts if a.account_label == "b@acme.test")

        updated = await service.set_primary("acme", "mail", str(second.id))

        assert updated.is_primary
        status = await service.get_status("acme", "mail")
        assert [a.account_label for a in status.accounts if a.is_primary] == ["b@acme.test"]

    @pytest.mark.asyncio
    async def test_list_connections_groups_by_provider(self, service):
        await _connect(service)
        connections = await service.list_connections("acme")
        assert list(connections) == ["mail"]
        assert connections["mail"].connected
        assert await service.list_connections("globex") == {}

    @pytest.mark.asyncio
    async def test_list_tools(self, service):
        assert {t.name for t in service.list_tools("mail")} == {"mail_send", "mail_explode"}
        assert "echo" in {t.name for t in service.list_tools()}
        with pytest.raises(UnknownProvider):
            service.list_tools("nope")

    @pytest.mark.asyncio
    async def test_invoke_tool_with_and_without_provider(self, service):
        await _connect(service)
        by_name = await service.invoke_tool("acme", "mail_send", {"to": "x"})
        explicit = await service.invoke_tool("acme", "mail_send", {"to": "x"}, provider_id="mail")
        assert by_name.success and explicit.success
        assert by_name.data == explicit.data


class TestApiKeyConnect:
    @pytest.fixture
    def valid_keys(self):
        return {"sk-good"}

    @pytest.fixture
    def api_key_service(self, settings, store, valid_keys):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.headers["Authorization"].removeprefix("Bearer ") in valid_keys:
                return httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}]})
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        registry = ConnectorRegistry([OpenAIConnector(settings, httpx.MockTransport(handler))])
        registry.freeze()
        return IntegrationService(registry, store, settings)

    @pytest.mark.asyncio
    async def test_valid_key_is_stored_encrypted(self, api_key_service, store):
        summary = await api_key_service.connect_api_key("acme", "openai", {"api_key": "sk-good"})
        assert summary.is_primary

        [credential] = await store.find_active("acme", "openai")
        assert credential.extra_secrets == {"api_key": "sk-good"}

    @pytest.mark.asyncio
    async def test_rejected_key_stores_nothing(self, api_key_service, store):
        with pytest.raises(AuthExchangeError) as excinfo:
            await api_key_service.connect_api_key("acme", "openai", {"api_key": "sk-bad"})
        assert excinfo.value.kind == "auth_exchange_failed"
        assert await store.list_accounts("acme") == []

    @pytest.mark.asyncio
    async def test_missing_fields(self, api_key_service):
        with pytest.raises(AuthExchangeError) as excinfo:
            await api_key_service.connect_api_key("acme", "openai", {})
        assert excinfo.value.kind == "auth_exchange_failed"

    @pytest.mark.asyncio
    async def test_oauth_provider_rejects_api_key(self, service):
        with pytest.raises(ConfigurationError):
            await service.connect_api_key("acme", "mail", {"api_key": "x"})

    @pytest.mark.asyncio
    async def test_revoked_key_fails_the_connection_check(self, api_key_service, store, valid_keys):
        summary = await api_key_service.connect_api_key("acme", "openai", {"api_key": "sk-good"})
        assert (await api_key_service.test_connection("acme", "openai", str(summary.id))).success

        valid_keys.clear()
        check = await api_key_service.test_connection("acme", "openai", str(summary.id))

        assert check.health == ConnectionHealth.UNHEALTHY
        assert check.error_kind == "auth_exchange_failed"
        [account] = await store.list_accounts("acme", "openai")
        assert account.status == CredentialStatus.ERROR


class TestConnectionHealth:
    @pytest.mark.asyncio
    async def test_fresh_oauth_account_is_healthy(self, service, store):
        await _connect(service)
        [account] = await store.list_accounts("acme", "mail")

        check = await service.test_connection("acme", "mail", str(account.id))

        assert check.health == ConnectionHealth.HEALTHY
        assert check.account_label == "ops@acme.test"
        assert "tokenExpiresAt" in check.details

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_by_the_check(self, service, store, mail):
        stale = await store.upsert("acme", "mail", "a", _grant("stale", hours=-1, refresh_token="r"))

        check = await service.test_connection("acme", "mail", str(stale.id))

        assert check.success
        mail.refresh_mock.assert_awaited_once()
        [credential] = await store.find_active("acme", "mail")
        assert credential.access_token == "tok-2"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_reports_expired(self, service, store, mail):
        stale = await store.upsert("acme", "mail", "a", _grant("stale", hours=-1))

        check = await service.test_connection("acme", "mail", str(stale.id))

        assert check.health == ConnectionHealth.EXPIRED
        assert check.error_kind == "reauth_required"
        mail.refresh_mock.assert_not_awaited()
        [account] = await store.list_accounts("acme", "mail")
        assert account.status == CredentialStatus.REAUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_failed_check_is_recorded_and_cleared(self, service, store, mail):
        await _connect(service)
        [account] = await store.list_accounts("acme", "mail")

        mail.check_connection = AsyncMock(side_effect=ProviderCallError("mailbox gone"))
        check = await service.test_connection("acme", "mail", str(account.id))
        assert check.health == ConnectionHealth.UNHEALTHY
        assert check.message == "mailbox gone"
        [account] = await store.list_accounts("acme", "mail")
        assert account.status == CredentialStatus.ERROR

        mail.check_connection = AsyncMock(return_value={})
        assert (await service.test_connection("acme", "mail", str(account.id))).success
        [account] = await store.list_accounts("acme", "mail")
        assert account.status == CredentialStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_account_of_another_provider(self, service, store):
        await _connect(service)
        [account] = await store.list_accounts("acme", "mail")
        with pytest.raises(NotFoundError):
            await service.test_connection("acme", "echo", str(account.id))

    @pytest.mark.asyncio
    async def test_health_report_counts_each_outcome(self, service, store, session_factory):
        await store.upsert("acme", "mail", "good", _grant("ok"))
        await store.upsert("acme", "mail", "stale", _grant("old", hours=-1))
        broken = await store.upsert("acme", "mail", "broken", _grant("x"))
        async with session_factory.begin() as session:
            row = await session.get(IntegrationCredential, broken.id)
            row.secrets_encrypted = row.secrets_encrypted[:-4] + "AAAA"

        report = await service.health("acme")

        assert (report.total, report.healthy, report.unhealthy, report.expired) == (3, 1, 1, 1)
        by_label = {c.account_label: c for c in report.connections}
        assert by_label["broken"].error_kind == "decryption_failed"
        assert by_label["stale"].health == ConnectionHealth.EXPIRED

    @pytest.mark.asyncio
    async def test_health_for_tenant_without_connections(self, service):
        report = await service.health("globex")
        assert report.total == 0
        assert report.connections == []
