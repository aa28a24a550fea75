from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.domain.models import IdempotencyRecord
from registrycore.persistence.guards import tenant_predicate


async def get_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
) -> IdempotencyRecord | None:
    result = await session.execute(
        select(IdempotencyRecord).where(
            tenant_predicate(IdempotencyRecord, tenant_id),
            IdempotencyRecord.idem_key == key,
        )
    )
    return result.scalar_one_or_none()


async def delete_expired_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    cutoff: datetime,
) -> int:
    # Discard a stale record so the key can be claimed again.
    result = await session.execute(
        delete(IdempotencyRecord).where(
            tenant_predicate(IdempotencyRecord, tenant_id),
            IdempotencyRecord.idem_key == key,
            IdempotencyRecord.created_at <= cutoff,
        ).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def set_response_code(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    response_code: int,
) -> int:
    result = await session.execute(
        update(IdempotencyRecord)
        .where(
            tenant_predicate(IdempotencyRecord, tenant_id),
            IdempotencyRecord.idem_key == key,
        )
        .values(response_code=response_code)
    )
    return int(result.rowcount or 0)


async def prune_expired_records(session: AsyncSession, *, cutoff: datetime) -> int:
    # Bulk maintenance across all tenants; callers own the commit.
    result = await session.execute(
        delete(IdempotencyRecord)
        .where(IdempotencyRecord.created_at <= cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_pending_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
) -> int:
    # Only unfinished claims can be released; recorded outcomes stay replayable.
    result = await session.execute(
        delete(IdempotencyRecord)
        .where(
            tenant_predicate(IdempotencyRecord, tenant_id),
            IdempotencyRecord.idem_key == key,
            IdempotencyRecord.response_code.is_(None),
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
