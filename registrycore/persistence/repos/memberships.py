from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.domain.models import Membership
from registrycore.domain.roles import STATUS_ACTIVE
from registrycore.persistence.guards import require_tenant_id, tenant_predicate


async def get_membership(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
) -> Membership | None:
    # Return the membership regardless of status so writers can reactivate it.
    result = await session.execute(
        select(Membership).where(
            Membership.user_id == user_id,
            tenant_predicate(Membership, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def get_active_membership(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
) -> Membership | None:
    # Expiry is checked by the caller against its own clock.
    result = await session.execute(
        select(Membership).where(
            Membership.user_id == user_id,
            tenant_predicate(Membership, tenant_id),
            Membership.status == STATUS_ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def list_active_memberships_for_user(
    session: AsyncSession,
    *,
    user_id: str,
) -> list[Membership]:
    result = await session.execute(
        select(Membership)
        .where(Membership.user_id == user_id, Membership.status == STATUS_ACTIVE)
        .order_by(Membership.tenant_id)
    )
    return list(result.scalars().all())


async def list_tenant_memberships(
    session: AsyncSession,
    *,
    tenant_id: str,
    include_inactive: bool = False,
) -> list[Membership]:
    require_tenant_id(tenant_id)
    stmt = select(Membership).where(tenant_predicate(Membership, tenant_id))
    if not include_inactive:
        stmt = stmt.where(Membership.status == STATUS_ACTIVE)
    result = await session.execute(stmt.order_by(Membership.granted_at, Membership.id))
    return list(result.scalars().all())
