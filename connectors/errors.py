"""
Error taxonomy for the connector layer.

Every error carries a stable machine-readable ``kind`` (what API clients and
OAuth redirects see) and an ``http_status`` hint for the route layer.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for all connector-layer failures."""

    kind: str = "integration_error"
    http_status: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class ConfigurationError(IntegrationError):
    """Provider is missing configuration or lacks the requested capability."""

    kind = "not_configured"
    http_status = 400


class DuplicateProviderError(IntegrationError):
    kind = "duplicate_provider"


class RegistryFrozenError(IntegrationError):
    kind = "registry_frozen"


class UnknownProvider(IntegrationError):
    kind = "unknown_provider"
    http_status = 404

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown integration: {provider_id}")
        self.provider_id = provider_id


class NotConnected(IntegrationError):
    kind = "not_connected"
    http_status = 409

    def __init__(self, tenant_id: str, provider_id: str) -> None:
        super().__init__(
            f"No connection found for '{provider_id}'. Please connect your account."
        )
        self.tenant_id = tenant_id
        self.provider_id = provider_id


class NotFoundError(IntegrationError):
    kind = "not_found"
    http_status = 404


class AuthExchangeError(IntegrationError):
    """The provider rejected an authorization code or returned an error payload."""

    kind = "auth_exchange_failed"
    http_status = 502


class CallbackStateError(IntegrationError):
    """OAuth state is missing, forged, expired, replayed or for another provider."""

    kind = "invalid_state"
    http_status = 400


class RefreshError(IntegrationError):
    """
    Token refresh failed.

    ``transient`` failures (timeouts, transport errors, 5xx) may succeed on a
    later tool call.  Permanent ones (revoked or invalid refresh token) need
    the tenant to re-authorize, so they surface as ``reauth_required``.
    """

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient

    @property
    def kind(self) -> str:  # type: ignore[override]
        return "refresh_transient" if self.transient else "reauth_required"

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 503 if self.transient else 401


class ReauthRequired(IntegrationError):
    """Expired credential with no way to refresh it."""

    kind = "reauth_required"
    http_status = 401


class DecryptionError(IntegrationError):
    """Envelope failed authentication: tampered record or wrong key."""

    kind = "decryption_failed"


class ProviderCallError(IntegrationError):
    """The downstream provider API itself failed."""

    kind = "provider_call_failed"
    http_status = 502
