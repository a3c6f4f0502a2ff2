"""
Credential store — tenant-scoped CRUD over encrypted integration credentials.

Every operation runs in its own transaction and every query carries the
tenant id in its predicate.  Mutations first lock the tenant row so that
concurrent connects/disconnects for one tenant serialize, which is what keeps
"exactly one primary per (tenant, provider)" true at every commit.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import EnvelopeCodec
from connectors.errors import DecryptionError, NotFoundError
from connectors.schemas import (
    AccountSummary,
    Credential,
    CredentialStatus,
    TokenGrant,
)
from database.helpers import get_or_create_tenant
from database.models import IntegrationCredential, Tenant

logger = logging.getLogger(__name__)

_SECRET_KEYS = ("access_token", "refresh_token")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise NotFoundError(f"Credential {value} not found") from exc


class CredentialStore:
    """Encrypted credential persistence with primary-account bookkeeping."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        codec: EnvelopeCodec,
    ) -> None:
        self._session_factory = session_factory
        self._codec = codec

    # ── Reads ───────────────────────────────────────────────────────────

    async def find_active(self, tenant_id: str, provider_id: str) -> List[Credential]:
        """Active credentials for the pair, primary first then oldest first."""
        async with self._session_factory() as session:
            rows = await self._active_rows(session, tenant_id, provider_id)
            return [self._to_credential(row) for row in rows]

    async def get_active(self, tenant_id: str, credential_id: str | uuid.UUID) -> Credential:
        async with self._session_factory() as session:
            row = await self._get_active_row(session, tenant_id, credential_id)
            return self._to_credential(row)

    async def list_accounts(
        self,
        tenant_id: str,
        provider_id: Optional[str] = None,
    ) -> List[AccountSummary]:
        """Non-secret view of active credentials; nothing is decrypted."""
        async with self._session_factory() as session:
            stmt = select(IntegrationCredential).where(
                IntegrationCredential.tenant_id == tenant_id,
                IntegrationCredential.is_active.is_(True),
            )
            if provider_id is not None:
                stmt = stmt.where(IntegrationCredential.provider_id == provider_id)
            stmt = stmt.order_by(
                IntegrationCredential.provider_id,
                IntegrationCredential.is_primary.desc(),
                IntegrationCredential.created_at.asc(),
                IntegrationCredential.id.asc(),
            )
            result = await session.execute(stmt)
            return [self._to_summary(row) for row in result.scalars().all()]

    # ── Writes ──────────────────────────────────────────────────────────

    async def upsert(
        self,
        tenant_id: str,
        provider_id: str,
        account_label: str,
        grant: TokenGrant,
    ) -> Credential:
        """
        Insert or update the credential for ``(tenant, provider, account)``.

        The record becomes primary iff no other active primary exists for
        the pair.  Reconnecting a deactivated account reactivates it.
        """
        async with self._session_factory.begin() as session:
            tenant = await get_or_create_tenant(session, tenant_id)
            await self._lock_tenant(session, tenant.id)

            result = await session.execute(
                select(IntegrationCredential)
                .where(
                    IntegrationCredential.tenant_id == tenant.id,
                    IntegrationCredential.provider_id == provider_id,
                    IntegrationCredential.account_label == account_label,
                )
                .with_for_update()
            )
            existing = result.scalar_one_or_none()
            has_primary = await self._has_active_primary(
                session, tenant.id, provider_id, exclude_id=existing.id if existing else None
            )
            now = datetime.now(timezone.utc)

            if existing is not None:
                secrets = self._merge_secrets(existing, grant)
                existing.secrets_encrypted = self._codec.encrypt_credentials(secrets)
                existing.expires_at = grant.expires_at
                existing.provider_meta = grant.metadata or existing.provider_meta or {}
                existing.is_active = True
                existing.is_primary = not has_primary
                existing.status = CredentialStatus.ACTIVE.value
                existing.error_message = None
                existing.updated_at = now
                row = existing
                logger.info("Updated %s credential for tenant %s", provider_id, tenant.id)
            else:
                row = IntegrationCredential(
                    id=uuid.uuid4(),
                    tenant_id=tenant.id,
                    provider_id=provider_id,
                    account_label=account_label,
                    secrets_encrypted=self._codec.encrypt_credentials(grant.secrets()),
                    expires_at=grant.expires_at,
                    provider_meta=grant.metadata or {},
                    is_active=True,
                    is_primary=not has_primary,
                    status=CredentialStatus.ACTIVE.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                logger.info(
                    "Created %s credential for tenant %s (primary=%s)",
                    provider_id,
                    tenant.id,
                    row.is_primary,
                )

            await session.flush()
            return self._to_credential(row)

    async def deactivate(
        self,
        tenant_id: str,
        credential_id: str | uuid.UUID,
        provider_id: Optional[str] = None,
    ) -> AccountSummary:
        """
        Soft-delete a credential.  If it was primary, the oldest remaining
        active sibling is promoted in the same transaction.
        """
        async with self._session_factory.begin() as session:
            await self._lock_tenant(session, tenant_id)
            row = await self._get_active_row(session, tenant_id, credential_id, for_update=True)
            if provider_id is not None and row.provider_id != provider_id:
                raise NotFoundError(f"Credential {credential_id} not found")

            was_primary = row.is_primary
            row.is_active = False
            row.is_primary = False
            row.updated_at = datetime.now(timezone.utc)
            await session.flush()

            if was_primary:
                result = await session.execute(
                    select(IntegrationCredential)
                    .where(
                        IntegrationCredential.tenant_id == tenant_id,
                        IntegrationCredential.provider_id == row.provider_id,
                        IntegrationCredential.is_active.is_(True),
                    )
                    .order_by(IntegrationCredential.created_at.asc(), IntegrationCredential.id.asc())
                    .limit(1)
                    .with_for_update()
                )
                successor = result.scalar_one_or_none()
                if successor is not None:
                    successor.is_primary = True
                    await session.flush()
                    logger.info(
                        "Promoted %s credential %s to primary for tenant %s",
                        row.provider_id,
                        successor.id,
                        tenant_id,
                    )

            logger.info("Deactivated %s credential %s for tenant %s", row.provider_id, row.id, tenant_id)
            return self._to_summary(row)

    async def mark_primary(
        self,
        tenant_id: str,
        credential_id: str | uuid.UUID,
        provider_id: Optional[str] = None,
    ) -> AccountSummary:
        async with self._session_factory.begin() as session:
            await self._lock_tenant(session, tenant_id)
            row = await self._get_active_row(session, tenant_id, credential_id, for_update=True)
            if provider_id is not None and row.provider_id != provider_id:
                raise NotFoundError(f"Credential {credential_id} not found")
            if row.is_primary:
                return self._to_summary(row)

            await session.execute(
                update(IntegrationCredential)
                .where(
                    IntegrationCredential.tenant_id == tenant_id,
                    IntegrationCredential.provider_id == row.provider_id,
                    IntegrationCredential.id != row.id,
                )
                .values(is_primary=False)
            )
            row.is_primary = True
            await session.flush()
            logger.info("Set %s credential %s as primary for tenant %s", row.provider_id, row.id, tenant_id)
            return self._to_summary(row)

    async def update_tokens(
        self,
        tenant_id: str,
        credential_id: str | uuid.UUID,
        grant: TokenGrant,
    ) -> Credential:
        """Persist a refreshed token.  Only the refresh lease holder calls this."""
        async with self._session_factory.begin() as session:
            row = await self._get_active_row(session, tenant_id, credential_id, for_update=True)
            secrets = self._merge_secrets(row, grant)
            now = datetime.now(timezone.utc)
            row.secrets_encrypted = self._codec.encrypt_credentials(secrets)
            row.expires_at = grant.expires_at
            row.last_refreshed_at = now
            row.updated_at = now
            row.status = CredentialStatus.ACTIVE.value
            row.error_message = None
            await session.flush()
            return self._to_credential(row)

    async def mark_status(
        self,
        tenant_id: str,
        credential_id: str | uuid.UUID,
        status: CredentialStatus,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._session_factory.begin() as session:
            await session.execute(
                update(IntegrationCredential)
                .where(
                    IntegrationCredential.tenant_id == tenant_id,
                    IntegrationCredential.id == _to_uuid(credential_id),
                )
                .values(status=status.value, error_message=error_message)
            )

    async def touch(self, tenant_id: str, credential_id: str | uuid.UUID) -> None:
        async with self._session_factory.begin() as session:
            await session.execute(
                update(IntegrationCredential)
                .where(
                    IntegrationCredential.tenant_id == tenant_id,
                    IntegrationCredential.id == _to_uuid(credential_id),
                )
                .values(last_used_at=datetime.now(timezone.utc))
            )

    # ── Internals ───────────────────────────────────────────────────────

    async def _lock_tenant(self, session: AsyncSession, tenant_id: str) -> None:
        await session.execute(select(Tenant.id).where(Tenant.id == tenant_id).with_for_update())

    async def _active_rows(
        self,
        session: AsyncSession,
        tenant_id: str,
        provider_id: str,
    ) -> List[IntegrationCredential]:
        result = await session.execute(
            select(IntegrationCredential)
            .where(
                IntegrationCredential.tenant_id == tenant_id,
                IntegrationCredential.provider_id == provider_id,
                IntegrationCredential.is_active.is_(True),
            )
            .order_by(
                IntegrationCredential.is_primary.desc(),
                IntegrationCredential.created_at.asc(),
                IntegrationCredential.id.asc(),
            )
        )
        return list(result.scalars().all())

    async def _get_active_row(
        self,
        session: AsyncSession,
        tenant_id: str,
        credential_id: str | uuid.UUID,
        for_update: bool = False,
    ) -> IntegrationCredential:
        stmt = select(IntegrationCredential).where(
            IntegrationCredential.id == _to_uuid(credential_id),
            IntegrationCredential.tenant_id == tenant_id,
            IntegrationCredential.is_active.is_(True),
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Credential {credential_id} not found")
        return row

    async def _has_active_primary(
        self,
        session: AsyncSession,
        tenant_id: str,
        provider_id: str,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        stmt = select(IntegrationCredential.id).where(
            IntegrationCredential.tenant_id == tenant_id,
            IntegrationCredential.provider_id == provider_id,
            IntegrationCredential.is_active.is_(True),
            IntegrationCredential.is_primary.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(IntegrationCredential.id != exclude_id)
        return (await session.execute(stmt.limit(1))).first() is not None

    def _merge_secrets(self, row: IntegrationCredential, grant: TokenGrant) -> Dict[str, str]:
        """New secrets over old ones; a refresh token is kept unless rotated."""
        try:
            current = self._codec.decrypt_credentials(row.secrets_encrypted)
        except DecryptionError:
            logger.error(
                "Credential %s could not be decrypted; replacing it with the new grant",
                row.id,
            )
            current = {}
        merged = {k: v for k, v in current.items() if k != "access_token"}
        merged.update(grant.secrets())
        return merged

    def _to_credential(self, row: IntegrationCredential) -> Credential:
        try:
            secrets = self._codec.decrypt_credentials(row.secrets_encrypted)
        except DecryptionError:
            logger.error(
                "Credential %s (%s, tenant %s) failed to decrypt — record is corrupt or the key changed",
                row.id,
                row.provider_id,
                row.tenant_id,
            )
            raise
        extra = {k: v for k, v in secrets.items() if k not in _SECRET_KEYS}
        return Credential(
            id=row.id,
            tenant_id=row.tenant_id,
            provider_id=row.provider_id,
            account_label=row.account_label or "",
            access_token=secrets.get("access_token", ""),
            refresh_token=secrets.get("refresh_token") or None,
            expires_at=_aware(row.expires_at),
            metadata=row.provider_meta or {},
            extra_secrets=extra,
            is_active=row.is_active,
            is_primary=row.is_primary,
            status=CredentialStatus(row.status),
            created_at=_aware(row.created_at),
        )

    def _to_summary(self, row: IntegrationCredential) -> AccountSummary:
        meta = row.provider_meta or {}
        return AccountSummary(
            id=row.id,
            provider_id=row.provider_id,
            account_label=row.account_label or "",
            is_primary=row.is_primary,
            status=CredentialStatus(row.status),
            display_name=meta.get("displayName"),
            expires_at=_aware(row.expires_at),
            created_at=_aware(row.created_at),
            last_used_at=_aware(row.last_used_at),
        )
