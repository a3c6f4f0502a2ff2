"""
SQLAlchemy ORM models for tenants and their integration credentials.

Column types are the portable SQLAlchemy ones (``Uuid``, ``JSON``) so the
same models run against PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(64), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    credentials = relationship("IntegrationCredential", back_populates="tenant")


class IntegrationCredential(Base):
    """
    One connected provider account for a tenant.

    Secret fields (access/refresh tokens, API keys) live only inside
    ``secrets_encrypted``; everything else is safe to show in status views.
    Rows are never deleted, only deactivated.
    """

    __tablename__ = "integration_credentials"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "provider_id", "account_label",
            name="uq_credential_tenant_provider_account",
        ),
        # At most one active primary per (tenant, provider).
        Index(
            "uq_credential_single_primary",
            "tenant_id",
            "provider_id",
            unique=True,
            postgresql_where=text("is_primary AND is_active"),
            sqlite_where=text("is_primary = 1 AND is_active = 1"),
        ),
        Index("ix_credential_tenant_provider", "tenant_id", "provider_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    provider_id = Column(String(64), nullable=False)
    account_label = Column(String(255), nullable=False, default="")
    secrets_encrypted = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True))
    provider_meta = Column(JSON, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    status = Column(String(32), nullable=False, default="active")
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    last_refreshed_at = Column(DateTime(timezone=True))
    last_used_at = Column(DateTime(timezone=True))

    tenant = relationship("Tenant", back_populates="credentials")
