from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.domain.models import PermissionDefinition, RolePermission, TenantRolePermission
from registrycore.domain.roles import DEFAULT_ROLE_PERMISSIONS, normalize_role
from registrycore.persistence.guards import require_tenant_id
from registrycore.persistence.repos import catalog as catalog_repo
from registrycore.services.audit import AuditChain, get_audit_chain, to_snapshot
from registrycore.services.authz.cache import (
    NS_ROLE_PERMISSIONS,
    NS_TENANT_ROLE_PERMISSIONS,
    PermissionCache,
    get_permission_cache,
)
from registrycore.services.resilience import call_store


logger = logging.getLogger(__name__)

ENTITY_ROLE_PERMISSION = "RolePermission"
ENTITY_TENANT_ROLE_PERMISSION = "TenantRolePermission"


async def _commit(session: AsyncSession) -> None:
    await call_store(session.commit, operation="catalog_commit")


async def grant_role_permission(
    session: AsyncSession,
    *,
    role: str,
    permission_key: str,
    actor_id: str | None,
    audit: AuditChain | None = None,
    cache: PermissionCache | None = None,
) -> bool:
    # Returns False when the grant already existed; the cache is evicted either way.
    role = normalize_role(role)
    audit = audit or get_audit_chain()
    cache = cache or get_permission_cache()
    existing = await call_store(
        lambda: catalog_repo.get_role_permission(session, role=role, permission_key=permission_key),
        operation="get_role_permission",
    )
    created = existing is None
    if created:
        session.add(RolePermission(role=role, permission_key=permission_key))
        await audit.log(
            session,
            tenant_id=None,
            actor_id=actor_id,
            action="GRANT",
            entity_type=ENTITY_ROLE_PERMISSION,
            entity_id=f"{role}:{permission_key}",
            after={"role": role, "permission_key": permission_key},
        )
    await _commit(session)
    cache.evict(NS_ROLE_PERMISSIONS, role)
    if created:
        logger.info("role_permission_granted role=%s permission=%s", role, permission_key)
    return created


async def revoke_role_permission(
    session: AsyncSession,
    *,
    role: str,
    permission_key: str,
    actor_id: str | None,
    audit: AuditChain | None = None,
    cache: PermissionCache | None = None,
) -> bool:
    role = normalize_role(role)
    audit = audit or get_audit_chain()
    cache = cache or get_permission_cache()
    deleted = await call_store(
        lambda: catalog_repo.delete_role_permission(session, role=role, permission_key=permission_key),
        operation="delete_role_permission",
    )
    if deleted:
        await audit.log(
            session,
            tenant_id=None,
            actor_id=actor_id,
            action="REVOKE",
            entity_type=ENTITY_ROLE_PERMISSION,
            entity_id=f"{role}:{permission_key}",
            before={"role": role, "permission_key": permission_key},
        )
    await _commit(session)
    cache.evict(NS_ROLE_PERMISSIONS, role)
    if deleted:
        logger.info("role_permission_revoked role=%s permission=%s", role, permission_key)
    return bool(deleted)


async def set_tenant_role_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    role: str,
    permission_key: str,
    granted: bool,
    actor_id: str | None,
    audit: AuditChain | None = None,
    cache: PermissionCache | None = None,
) -> TenantRolePermission:
    # Upsert the override; its flag beats the global table in both directions.
    require_tenant_id(tenant_id)
    role = normalize_role(role)
    audit = audit or get_audit_chain()
    cache = cache or get_permission_cache()
    existing = await call_store(
        lambda: catalog_repo.get_tenant_role_permission(
            session, tenant_id=tenant_id, role=role, permission_key=permission_key
        ),
        operation="get_tenant_role_permission",
    )
    before = to_snapshot(_override_state(existing)) if existing is not None else None
    if existing is None:
        row = TenantRolePermission(
            tenant_id=tenant_id, role=role, permission_key=permission_key, granted=granted
        )
        session.add(row)
        action = "CREATE"
    else:
        row = existing
        row.granted = granted
        action = "UPDATE"
    await audit.log(
        session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        entity_type=ENTITY_TENANT_ROLE_PERMISSION,
        entity_id=f"{role}:{permission_key}",
        before=before,
        after=_override_state(row),
    )
    await _commit(session)
    cache.evict(NS_TENANT_ROLE_PERMISSIONS, (tenant_id, role, permission_key))
    logger.info(
        "tenant_override_set tenant_id=%s role=%s permission=%s granted=%s",
        tenant_id,
        role,
        permission_key,
        granted,
    )
    return row


async def clear_tenant_role_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    role: str,
    permission_key: str,
    actor_id: str | None,
    audit: AuditChain | None = None,
    cache: PermissionCache | None = None,
) -> bool:
    # Removing the override hands the decision back to the global table.
    require_tenant_id(tenant_id)
    role = normalize_role(role)
    audit = audit or get_audit_chain()
    cache = cache or get_permission_cache()
    existing = await call_store(
        lambda: catalog_repo.get_tenant_role_permission(
            session, tenant_id=tenant_id, role=role, permission_key=permission_key
        ),
        operation="get_tenant_role_permission",
    )
    if existing is not None:
        before = _override_state(existing)
        await call_store(
            lambda: catalog_repo.delete_tenant_role_permission(
                session, tenant_id=tenant_id, role=role, permission_key=permission_key
            ),
            operation="delete_tenant_role_permission",
        )
        await audit.log(
            session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action="DELETE",
            entity_type=ENTITY_TENANT_ROLE_PERMISSION,
            entity_id=f"{role}:{permission_key}",
            before=before,
        )
    await _commit(session)
    cache.evict(NS_TENANT_ROLE_PERMISSIONS, (tenant_id, role, permission_key))
    return existing is not None


def _override_state(row: TenantRolePermission) -> dict[str, object]:
    return {
        "tenant_id": row.tenant_id,
        "role": row.role,
        "permission_key": row.permission_key,
        "granted": bool(row.granted),
    }


async def seed_default_catalog(
    session: AsyncSession,
    *,
    cache: PermissionCache | None = None,
) -> int:
    """Insert the default permission keys and role grants that are missing.

    Safe to run repeatedly; existing rows are left alone. Returns the number
    of role grants added.
    """
    cache = cache or get_permission_cache()
    known = {row.key for row in await catalog_repo.list_permission_definitions(session)}
    for role_permissions in DEFAULT_ROLE_PERMISSIONS.values():
        for key in sorted(role_permissions - known):
            session.add(PermissionDefinition(key=key))
            known.add(key)
    added = 0
    for role, permission_keys in DEFAULT_ROLE_PERMISSIONS.items():
        granted = await catalog_repo.list_role_permission_keys(session, role)
        for key in sorted(permission_keys - granted):
            session.add(RolePermission(role=role, permission_key=key))
            added += 1
    await _commit(session)
    cache.evict_namespace(NS_ROLE_PERMISSIONS)
    logger.info("catalog_seeded role_grants_added=%s", added)
    return added
