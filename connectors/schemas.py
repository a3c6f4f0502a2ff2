"""
Pydantic schemas shared by the connector layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AuthKind(str, Enum):
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    NONE = "none"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    REAUTH_REQUIRED = "reauth_required"
    ERROR = "error"


# ═══════════════════════════════════════════════════════════════════════════════
# Tools
# ═══════════════════════════════════════════════════════════════════════════════


class ToolParameter(BaseModel):
    name: str
    type: str  # "string" | "number" | "boolean" | "array" | "object"
    description: str = ""
    required: bool = False
    default: Any = None


class ToolDefinition(BaseModel):
    """Describes a callable provider operation; never executes anything."""

    name: str
    description: str
    category: str
    provider_id: str
    parameters: List[ToolParameter] = Field(default_factory=list)


class ToolResult(BaseModel):
    """
    Outcome of a tool invocation.

    Returned, never raised: failures carry ``error`` plus a stable
    ``error_kind`` so callers can branch without parsing messages.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "ToolResult":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, kind: str = "provider_call_failed", **metadata: Any) -> "ToolResult":
        return cls(success=False, error=error, error_kind=kind, metadata=metadata)


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials
# ═══════════════════════════════════════════════════════════════════════════════


class TokenGrant(BaseModel):
    """What a provider hands back from a code exchange, refresh or key check."""

    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    account_label: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    extra_secrets: Dict[str, str] = Field(default_factory=dict)

    @staticmethod
    def expiry_from(expires_in: Optional[int | float]) -> Optional[datetime]:
        """Convert a provider's relative ``expires_in`` into an absolute time."""
        if expires_in is None:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=float(expires_in))

    def secrets(self) -> Dict[str, str]:
        out = dict(self.extra_secrets)
        if self.access_token:
            out["access_token"] = self.access_token
        if self.refresh_token:
            out["refresh_token"] = self.refresh_token
        return out


class Credential(BaseModel):
    """A decrypted, live credential.  Only ever held in memory."""

    id: uuid.UUID
    tenant_id: str
    provider_id: str
    account_label: str = ""
    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    extra_secrets: Dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    is_primary: bool = False
    status: CredentialStatus = CredentialStatus.ACTIVE
    created_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None, skew_seconds: int = 0) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now + timedelta(seconds=skew_seconds)


class AccountSummary(BaseModel):
    """Non-secret view of a credential for status screens."""

    id: uuid.UUID
    provider_id: str
    account_label: str
    is_primary: bool
    status: CredentialStatus
    display_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


class ConnectionStatus(BaseModel):
    connected: bool
    accounts: List[AccountSummary] = Field(default_factory=list)


class ConnectionHealth(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    EXPIRED = "expired"


class ConnectionCheck(BaseModel):
    """Result of validating one stored account against its provider."""

    account_id: uuid.UUID
    provider_id: str
    account_label: str = ""
    health: ConnectionHealth
    message: str = ""
    error_kind: Optional[str] = None
    latency_ms: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.health == ConnectionHealth.HEALTHY


class HealthReport(BaseModel):
    total: int = 0
    healthy: int = 0
    unhealthy: int = 0
    expired: int = 0
    connections: List[ConnectionCheck] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_checks(cls, checks: List[ConnectionCheck]) -> "HealthReport":
        return cls(
            total=len(checks),
            healthy=sum(1 for c in checks if c.health == ConnectionHealth.HEALTHY),
            unhealthy=sum(1 for c in checks if c.health == ConnectionHealth.UNHEALTHY),
            expired=sum(1 for c in checks if c.health == ConnectionHealth.EXPIRED),
            connections=checks,
        )
