from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.domain.models import AuditLogEntry
from registrycore.persistence.guards import lineage_predicate


async def get_chain_head(session: AsyncSession, *, chain_key: str) -> AuditLogEntry | None:
    # The head is the highest claimed slot; unchained entries never become heads.
    result = await session.execute(
        select(AuditLogEntry)
        .where(AuditLogEntry.chain_key == chain_key, AuditLogEntry.chain_seq.is_not(None))
        .order_by(AuditLogEntry.chain_seq.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_chain_slice(
    session: AsyncSession,
    *,
    chain_key: str,
    after_seq: int,
    limit: int,
) -> list[AuditLogEntry]:
    # Walk a chain in slot order in bounded batches for offline verification.
    result = await session.execute(
        select(AuditLogEntry)
        .where(AuditLogEntry.chain_key == chain_key, AuditLogEntry.chain_seq > after_seq)
        .order_by(AuditLogEntry.chain_seq.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_unchained(session: AsyncSession, *, chain_key: str) -> int:
    result = await session.execute(
        select(func.count(AuditLogEntry.id)).where(
            AuditLogEntry.chain_key == chain_key,
            AuditLogEntry.chain_seq.is_(None),
        )
    )
    return int(result.scalar_one())


async def list_entries(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    actor_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ts_from: datetime | None = None,
    ts_to: datetime | None = None,
    cursor: int | None = None,
    limit: int = 20,
) -> list[AuditLogEntry]:
    # Scope every listing to one lineage to prevent cross-tenant leakage.
    stmt = select(AuditLogEntry).where(lineage_predicate(AuditLogEntry, tenant_id))
    if actor_id:
        stmt = stmt.where(AuditLogEntry.actor_id == actor_id)
    if entity_type:
        stmt = stmt.where(AuditLogEntry.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLogEntry.entity_id == entity_id)
    if ts_from:
        stmt = stmt.where(AuditLogEntry.ts >= ts_from)
    if ts_to:
        stmt = stmt.where(AuditLogEntry.ts <= ts_to)
    if cursor is not None:
        stmt = stmt.where(AuditLogEntry.id > cursor)

    stmt = stmt.order_by(AuditLogEntry.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_entry(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    entry_id: int,
) -> AuditLogEntry | None:
    result = await session.execute(
        select(AuditLogEntry).where(
            AuditLogEntry.id == entry_id,
            lineage_predicate(AuditLogEntry, tenant_id),
        )
    )
    return result.scalar_one_or_none()
