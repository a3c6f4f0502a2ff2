"""
OAuth flow coordination — authorization URLs, signed state, callbacks.

One authorization attempt moves through::

    STARTED → REDIRECTED → CALLBACK_RECEIVED → EXCHANGED | FAILED

Nothing is reserved at ``start()``: an abandoned redirect simply never
produces a callback.  The state parameter is an HMAC-signed token carrying
``{tenant_id, provider_id, nonce, exp}``; the nonce is single-use, so a
replayed callback is rejected before any code exchange happens.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from connectors.credential_store import CredentialStore
from connectors.errors import (
    CallbackStateError,
    ConfigurationError,
    IntegrationError,
)
from connectors.registry import ConnectorRegistry

logger = logging.getLogger(__name__)


class OAuthPhase(str, Enum):
    STARTED = "started"
    REDIRECTED = "redirected"
    CALLBACK_RECEIVED = "callback_received"
    EXCHANGED = "exchanged"
    FAILED = "failed"


class OAuthState(BaseModel):
    tenant_id: str
    provider_id: str
    nonce: str
    exp: int


@dataclass(frozen=True)
class AuthorizationRequest:
    tenant_id: str
    provider_id: str
    url: str
    state: str
    phase: OAuthPhase = OAuthPhase.REDIRECTED


class CallbackOutcome(BaseModel):
    phase: OAuthPhase
    provider_id: str
    tenant_id: Optional[str] = None
    credential_id: Optional[str] = None
    account_label: Optional[str] = None
    error_kind: Optional[str] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.phase == OAuthPhase.EXCHANGED

    @classmethod
    def failed(
        cls,
        provider_id: str,
        kind: str,
        message: str,
        tenant_id: Optional[str] = None,
    ) -> "CallbackOutcome":
        return cls(
            phase=OAuthPhase.FAILED,
            provider_id=provider_id,
            tenant_id=tenant_id,
            error_kind=kind,
            message=message,
        )


# ── State token helpers (CSRF protection) ──────────────────────────────


class NonceLedger:
    """Remembers consumed nonces until their state token would expire anyway."""

    def __init__(self) -> None:
        self._consumed: Dict[str, float] = {}

    def consume(self, nonce: str, expires_at: float) -> bool:
        """Mark ``nonce`` used; False if it was already used."""
        now = time.time()
        self._consumed = {n: exp for n, exp in self._consumed.items() if exp > now}
        if nonce in self._consumed:
            return False
        self._consumed[nonce] = expires_at
        return True

    def __len__(self) -> int:
        return len(self._consumed)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class OAuthStateSigner:
    """Mints and verifies HMAC-SHA256 signed OAuth state tokens."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 600,
        ledger: Optional[NonceLedger] = None,
    ) -> None:
        if not secret:
            raise ConfigurationError("OAuth state secret is empty")
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds
        self._ledger = ledger or NonceLedger()

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode(), hashlib.sha256).hexdigest()

    def mint(self, tenant_id: str, provider_id: str) -> str:
        """Create an opaque state string for one authorization attempt."""
        state = OAuthState(
            tenant_id=tenant_id,
            provider_id=provider_id,
            nonce=secrets.token_urlsafe(16),
            exp=int(time.time()) + self.ttl_seconds,
        )
        payload = _b64encode(
            json.dumps(state.model_dump(), separators=(",", ":"), sort_keys=True).encode()
        )
        return f"{payload}.{self._sign(payload)}"

    def verify(self, state: str, provider_id: Optional[str] = None) -> OAuthState:
        """
        Verify signature, expiry, provider and single use.

        Raises ``CallbackStateError`` on any failure.
        """
        payload, sep, signature = state.partition(".")
        if not sep or not payload or not signature:
            raise CallbackStateError("Malformed OAuth state")
        if not hmac.compare_digest(signature, self._sign(payload)):
            raise CallbackStateError("OAuth state signature mismatch")

        try:
            decoded = OAuthState.model_validate_json(_b64decode(payload))
        except (binascii.Error, ValueError, ValidationError) as exc:
            raise CallbackStateError("OAuth state payload is unreadable") from exc

        if decoded.exp < time.time():
            raise CallbackStateError("OAuth state expired")
        if provider_id is not None and decoded.provider_id != provider_id:
            raise CallbackStateError(
                f"OAuth state was issued for {decoded.provider_id}, not {provider_id}"
            )
        if not self._ledger.consume(decoded.nonce, decoded.exp):
            raise CallbackStateError("OAuth state was already used")
        return decoded


# ── Coordinator ────────────────────────────────────────────────────────


class OAuthCoordinator:
    """Drives the authorization-code flow for OAuth providers."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        store: CredentialStore,
        signer: OAuthStateSigner,
    ) -> None:
        self._registry = registry
        self._store = store
        self._signer = signer

    def start(self, tenant_id: str, provider_id: str) -> AuthorizationRequest:
        """
        Build the provider redirect for ``tenant_id``.

        Raises ``UnknownProvider`` or ``ConfigurationError``.
        """
        connector = self._registry.require(provider_id)
        if not connector.is_configured():
            raise ConfigurationError(f"Integration {provider_id} is not configured")
        if not connector.supports_oauth:
            raise ConfigurationError(f"Integration {provider_id} does not support OAuth")

        self._transition(OAuthPhase.STARTED, tenant_id, provider_id)
        state = self._signer.mint(tenant_id, provider_id)
        url = connector.get_auth_url(tenant_id, state)
        return AuthorizationRequest(
            tenant_id=tenant_id,
            provider_id=provider_id,
            url=url,
            state=state,
            phase=self._transition(OAuthPhase.REDIRECTED, tenant_id, provider_id),
        )

    def _transition(self, phase: OAuthPhase, tenant_id: Optional[str], provider_id: str) -> OAuthPhase:
        logger.info("OAuth %s: tenant=%s provider=%s", phase.value, tenant_id or "-", provider_id)
        return phase

    def _fail(
        self,
        provider_id: str,
        kind: str,
        message: str,
        tenant_id: Optional[str] = None,
    ) -> CallbackOutcome:
        self._transition(OAuthPhase.FAILED, tenant_id, provider_id)
        return CallbackOutcome.failed(provider_id, kind, message, tenant_id)

    async def complete_callback(
        self,
        provider_id: str,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> CallbackOutcome:
        """
        Finish an authorization attempt.  Flow failures come back as a
        ``FAILED`` outcome, never as an exception, and persist nothing.
        """
        if error:
            logger.warning("OAuth error from %s: %s", provider_id, error)
            return self._fail(provider_id, "oauth_denied", str(error))

        if not code or not state:
            return self._fail(
                provider_id,
                "missing_params",
                "Authorization code or state is missing. Please try connecting again.",
            )

        try:
            decoded = self._signer.verify(state, provider_id)
        except CallbackStateError as exc:
            logger.warning("Rejected OAuth callback for %s: %s", provider_id, exc.message)
            return self._fail(provider_id, exc.kind, exc.message)

        connector = self._registry.get(provider_id)
        if connector is None or not connector.supports_oauth:
            return self._fail(
                provider_id, "unknown_provider", f"Unknown integration: {provider_id}", decoded.tenant_id
            )

        self._transition(OAuthPhase.CALLBACK_RECEIVED, decoded.tenant_id, provider_id)
        try:
            grant = await connector.handle_callback(code, state)
        except IntegrationError as exc:
            logger.warning(
                "OAuth exchange failed: tenant=%s provider=%s: %s",
                decoded.tenant_id,
                provider_id,
                exc.message,
            )
            return self._fail(provider_id, exc.kind, exc.message, decoded.tenant_id)

        account_label = grant.account_label or str(grant.metadata.get("email") or "")
        try:
            credential = await self._store.upsert(decoded.tenant_id, provider_id, account_label, grant)
        except SQLAlchemyError:
            logger.exception(
                "Storing %s credential failed for tenant %s", provider_id, decoded.tenant_id
            )
            return self._fail(
                provider_id, "storage_error", "Could not save the connection", decoded.tenant_id
            )

        logger.info(
            "OAuth connected: tenant=%s provider=%s account=%s",
            decoded.tenant_id,
            provider_id,
            account_label or "(default)",
        )
        return CallbackOutcome(
            phase=self._transition(OAuthPhase.EXCHANGED, decoded.tenant_id, provider_id),
            provider_id=provider_id,
            tenant_id=decoded.tenant_id,
            credential_id=str(credential.id),
            account_label=account_label,
        )
