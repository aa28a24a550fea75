from __future__ import annotations

from datetime import datetime
import logging
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.domain.models import Membership, as_utc
from registrycore.domain.roles import STATUS_ACTIVE, STATUS_INACTIVE, normalize_role, normalize_status
from registrycore.persistence.guards import require_tenant_id
from registrycore.persistence.repos import memberships as memberships_repo
from registrycore.services.audit import AuditChain, get_audit_chain
from registrycore.services.authz.cache import NS_MEMBERSHIPS, PermissionCache, get_permission_cache
from registrycore.services.resilience import call_store


logger = logging.getLogger(__name__)

ENTITY_MEMBERSHIP = "Membership"


def membership_state(row: Membership) -> dict[str, object]:
    # Audit snapshot of the fields that drive authorization.
    expires_at = as_utc(row.expires_at)
    return {
        "id": row.id,
        "user_id": row.user_id,
        "tenant_id": row.tenant_id,
        "role": row.role,
        "status": row.status,
        "granted_by": row.granted_by,
        "expires_at": expires_at.isoformat() if expires_at is not None else None,
    }


def evict_membership(cache: PermissionCache, *, user_id: str, tenant_id: str) -> int:
    # Entries are keyed per token id, so drop every token's view of the pair.
    return cache.evict_matching(
        NS_MEMBERSHIPS,
        lambda key: key[0] == user_id and key[1] == tenant_id,
    )


async def _insert_or_load(session: AsyncSession, candidate: Membership) -> Membership:
    # A concurrent grant may commit the (user, tenant) row first; its row is then updated instead.
    try:
        async with session.begin_nested():
            session.add(candidate)
        return candidate
    except IntegrityError:
        winner = await memberships_repo.get_membership(
            session, user_id=candidate.user_id, tenant_id=candidate.tenant_id
        )
        if winner is None:
            raise
        logger.info(
            "membership_grant_conflict tenant_id=%s user_id=%s",
            candidate.tenant_id,
            candidate.user_id,
        )
        return winner


async def grant_membership(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    role: str,
    actor_id: str | None,
    expires_at: datetime | None = None,
    audit: AuditChain | None = None,
    cache: PermissionCache | None = None,
) -> tuple[Membership, bool]:
    """Create or update the membership of ``user_id`` in ``tenant_id``.

    Re-granting an inactive membership reactivates it with the new role.
    Returns the row and whether it was newly created.
    """
    require_tenant_id(tenant_id)
    role = normalize_role(role)
    audit = audit or get_audit_chain()
    cache = cache or get_permission_cache()
    existing = await call_store(
        lambda: memberships_repo.get_membership(session, user_id=user_id, tenant_id=tenant_id),
        operation="get_membership",
    )
    created = False
    if existing is None:
        candidate = Membership(
            id=uuid4().hex,
            user_id=user_id,
            tenant_id=tenant_id,
            role=role,
            status=STATUS_ACTIVE,
            granted_by=actor_id,
            expires_at=expires_at,
        )
        existing = await call_store(
            lambda: _insert_or_load(session, candidate), operation="membership_insert"
        )
        created = existing is candidate
    row = existing
    if created:
        before = None
        action = "CREATE"
    else:
        before = membership_state(row)
        row.role = role
        row.status = STATUS_ACTIVE
        row.granted_by = actor_id
        row.expires_at = expires_at
        action = "UPDATE"
    await audit.log(
        session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        entity_type=ENTITY_MEMBERSHIP,
        entity_id=row.id,
        before=before,
        after=membership_state(row),
    )
    await call_store(session.commit, operation="membership_commit")
    evict_membership(cache, user_id=user_id, tenant_id=tenant_id)
    logger.info(
        "membership_granted tenant_id=%s user_id=%s role=%s action=%s",
        tenant_id,
        user_id,
        role,
        action,
    )
    return row, created


async def set_membership_status(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    status: str,
    actor_id: str | None,
    audit: AuditChain | None = None,
    cache: PermissionCache | None = None,
) -> Membership | None:
    # None when the user never belonged to the tenant.
    require_tenant_id(tenant_id)
    status = normalize_status(status)
    audit = audit or get_audit_chain()
    cache = cache or get_permission_cache()
    row = await call_store(
        lambda: memberships_repo.get_membership(session, user_id=user_id, tenant_id=tenant_id),
        operation="get_membership",
    )
    if row is None:
        return None
    if row.status != status:
        before = membership_state(row)
        row.status = status
        await audit.log(
            session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action="UPDATE",
            entity_type=ENTITY_MEMBERSHIP,
            entity_id=row.id,
            before=before,
            after=membership_state(row),
        )
        await call_store(session.commit, operation="membership_commit")
        logger.info(
            "membership_status_changed tenant_id=%s user_id=%s status=%s", tenant_id, user_id, status
        )
    evict_membership(cache, user_id=user_id, tenant_id=tenant_id)
    return row


async def revoke_membership(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    actor_id: str | None,
    audit: AuditChain | None = None,
    cache: PermissionCache | None = None,
) -> Membership | None:
    return await set_membership_status(
        session,
        user_id=user_id,
        tenant_id=tenant_id,
        status=STATUS_INACTIVE,
        actor_id=actor_id,
        audit=audit,
        cache=cache,
    )
