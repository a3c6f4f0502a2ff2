"""
Tests for the token refresh manager — expiry handling and single-flight
refresh under concurrency.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from connectors.errors import ReauthRequired, RefreshError
from connectors.schemas import CredentialStatus, TokenGrant
from connectors.token_manager import TokenRefreshManager


def _expiry(hours: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


@pytest.fixture
def tokens(registry, store, settings):
    return TokenRefreshManager(registry, store, settings)


async def _stored(store, access_token="old", refresh_token="ref-1", hours=-1.0):
    return await store.upsert(
        "acme",
        "mail",
        "ops@acme.test",
        TokenGrant(access_token=access_token, refresh_token=refresh_token, expires_at=_expiry(hours)),
    )


class TestEnsureFresh:
    @pytest.mark.asyncio
    async def test_valid_token_is_returned_untouched(self, tokens, store, mail):
        credential = await _stored(store, hours=1)
        assert await tokens.ensure_fresh(credential) is credential
        mail.refresh_mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_expiry_means_no_refresh(self, tokens, store, mail):
        credential = await store.upsert("acme", "mail", "", TokenGrant(access_token="forever"))
        assert (await tokens.ensure_fresh(credential)).access_token == "forever"
        mail.refresh_mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_persisted(self, tokens, store, mail):
        credential = await _stored(store)

        fresh = await tokens.ensure_fresh(credential)

        assert fresh.access_token == "tok-2"
        assert fresh.refresh_token == "ref-1"
        assert not fresh.is_expired()
        [stored] = await store.find_active("acme", "mail")
        assert stored.access_token == "tok-2"
        mail.refresh_mock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, tokens, store, mail):
        credential = await _stored(store)

        async def slow_refresh(cred):
            await asyncio.sleep(0.05)
            return TokenGrant(access_token="shared", expires_at=_expiry(1))

        mail.refresh_mock.side_effect = slow_refresh

        results = await asyncio.gather(*(tokens.ensure_fresh(credential) for _ in range(5)))

        assert mail.refresh_mock.await_count == 1
        assert {r.access_token for r in results} == {"shared"}
        assert tokens.in_flight() == 0

    @pytest.mark.asyncio
    async def test_stale_copy_sees_refresh_done_by_earlier_holder(self, tokens, store, mail):
        stale = await _stored(store)
        await tokens.ensure_fresh(stale)

        again = await tokens.ensure_fresh(stale)

        assert again.access_token == "tok-2"
        mail.refresh_mock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, tokens, store, mail):
        credential = await _stored(store, refresh_token=None)

        with pytest.raises(ReauthRequired):
            await tokens.ensure_fresh(credential)

        mail.refresh_mock.assert_not_awaited()
        [summary] = await store.list_accounts("acme", "mail")
        assert summary.status == CredentialStatus.REAUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_revoked_refresh_token(self, tokens, store, mail):
        credential = await _stored(store)
        mail.refresh_mock.side_effect = RefreshError("invalid_grant", transient=False)

        with pytest.raises(RefreshError) as excinfo:
            await tokens.ensure_fresh(credential)

        assert excinfo.value.kind == "reauth_required"
        [summary] = await store.list_accounts("acme", "mail")
        assert summary.status == CredentialStatus.REAUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_transient_failure_can_be_retried(self, tokens, store, mail):
        credential = await _stored(store)
        mail.refresh_mock.side_effect = [
            RefreshError("502 from token endpoint", transient=True),
            TokenGrant(access_token="second-try", expires_at=_expiry(1)),
        ]

        with pytest.raises(RefreshError) as excinfo:
            await tokens.ensure_fresh(credential)
        assert excinfo.value.kind == "refresh_transient"
        assert tokens.in_flight() == 0

        fresh = await tokens.ensure_fresh(credential)
        assert fresh.access_token == "second-try"
        [summary] = await store.list_accounts("acme", "mail")
        assert summary.status == CredentialStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_timeout_is_transient_and_releases_lease(self, registry, store, settings, mail):
        tokens = TokenRefreshManager(
            registry, store, settings.model_copy(update={"refresh_timeout_seconds": 0.05})
        )
        credential = await _stored(store)

        async def hang(cred):
            await asyncio.sleep(5)

        mail.refresh_mock.side_effect = hang

        with pytest.raises(RefreshError) as excinfo:
            await tokens.ensure_fresh(credential)

        assert excinfo.value.transient
        assert tokens.in_flight() == 0
        [summary] = await store.list_accounts("acme", "mail")
        assert summary.status == CredentialStatus.ERROR

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_refresh(self, tokens, store, mail):
        credential = await _stored(store)
        started = asyncio.Event()

        async def slow_refresh(cred):
            started.set()
            await asyncio.sleep(0.05)
            return TokenGrant(access_token="survived", expires_at=_expiry(1))

        mail.refresh_mock.side_effect = slow_refresh

        impatient = asyncio.create_task(tokens.ensure_fresh(credential))
        await started.wait()
        impatient.cancel()
        patient = await tokens.ensure_fresh(credential)

        assert patient.access_token == "survived"
        assert mail.refresh_mock.await_count == 1

    @pytest.mark.asyncio
    async def test_expiry_skew(self, registry, store, settings, mail):
        tokens = TokenRefreshManager(
            registry, store, settings.model_copy(update={"token_expiry_skew_seconds": 7200})
        )
        credential = await _stored(store, hours=1)
        fresh = await tokens.ensure_fresh(credential)
        assert fresh.access_token == "tok-2"
