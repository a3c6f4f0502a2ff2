"""
Database helper functions — schema bootstrap and tenant find-or-create.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from database.models import Base, Tenant

logger = logging.getLogger(__name__)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def find_tenant(session: AsyncSession, tenant_ref: str) -> Tenant | None:
    result = await session.execute(
        select(Tenant).where(or_(Tenant.id == tenant_ref, Tenant.slug == tenant_ref))
    )
    return result.scalars().first()


async def get_or_create_tenant(session: AsyncSession, tenant_ref: str) -> Tenant:
    """
    Return the tenant whose id or slug is ``tenant_ref``, creating it on
    first reference (idempotent under concurrent first references).
    """
    tenant = await find_tenant(session, tenant_ref)
    if tenant is not None:
        return tenant

    insert = pg_insert if session.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = (
        insert(Tenant)
        .values(id=tenant_ref, name=tenant_ref, slug=tenant_ref)
        .on_conflict_do_nothing()
    )
    await session.execute(stmt)
    await session.flush()

    tenant = await find_tenant(session, tenant_ref)
    if tenant is None:
        raise RuntimeError(f"Tenant {tenant_ref!r} could not be created")
    logger.info("Tenant ready: %s", tenant.id)
    return tenant
