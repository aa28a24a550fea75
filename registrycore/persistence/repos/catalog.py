from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.domain.models import PermissionDefinition, RolePermission, TenantRolePermission
from registrycore.persistence.guards import tenant_predicate


async def list_role_permission_keys(session: AsyncSession, role: str) -> frozenset[str]:
    result = await session.execute(
        select(RolePermission.permission_key).where(RolePermission.role == role)
    )
    return frozenset(result.scalars().all())


async def get_role_permission(
    session: AsyncSession,
    *,
    role: str,
    permission_key: str,
) -> RolePermission | None:
    result = await session.execute(
        select(RolePermission).where(
            RolePermission.role == role,
            RolePermission.permission_key == permission_key,
        )
    )
    return result.scalar_one_or_none()


async def delete_role_permission(
    session: AsyncSession,
    *,
    role: str,
    permission_key: str,
) -> int:
    result = await session.execute(
        delete(RolePermission).where(
            RolePermission.role == role,
            RolePermission.permission_key == permission_key,
        )
    )
    return int(result.rowcount or 0)


async def get_tenant_role_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    role: str,
    permission_key: str,
) -> TenantRolePermission | None:
    result = await session.execute(
        select(TenantRolePermission).where(
            tenant_predicate(TenantRolePermission, tenant_id),
            TenantRolePermission.role == role,
            TenantRolePermission.permission_key == permission_key,
        )
    )
    return result.scalar_one_or_none()


async def list_tenant_role_permissions(
    session: AsyncSession,
    *,
    tenant_id: str,
    role: str | None = None,
) -> list[TenantRolePermission]:
    stmt = select(TenantRolePermission).where(tenant_predicate(TenantRolePermission, tenant_id))
    if role is not None:
        stmt = stmt.where(TenantRolePermission.role == role)
    result = await session.execute(
        stmt.order_by(TenantRolePermission.role, TenantRolePermission.permission_key)
    )
    return list(result.scalars().all())


async def delete_tenant_role_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    role: str,
    permission_key: str,
) -> int:
    result = await session.execute(
        delete(TenantRolePermission).where(
            tenant_predicate(TenantRolePermission, tenant_id),
            TenantRolePermission.role == role,
            TenantRolePermission.permission_key == permission_key,
        )
    )
    return int(result.rowcount or 0)


async def list_permission_definitions(session: AsyncSession) -> list[PermissionDefinition]:
    result = await session.execute(select(PermissionDefinition).order_by(PermissionDefinition.key))
    return list(result.scalars().all())


async def get_permission_definition(session: AsyncSession, key: str) -> PermissionDefinition | None:
    result = await session.execute(select(PermissionDefinition).where(PermissionDefinition.key == key))
    return result.scalar_one_or_none()
