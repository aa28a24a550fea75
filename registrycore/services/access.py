"""Entry points used by request handlers.

Handlers call these instead of reaching into the resolver, audit chain and
idempotency guard directly, so process-wide singletons and feature switches
are applied in one place.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.core.config import get_settings
from registrycore.domain.models import AuditLogEntry
from registrycore.services.audit import get_audit_chain
from registrycore.services.auth.identity import IdentityToken
from registrycore.services.authz.resolver import AuthorizationDecision, PermissionResolver
from registrycore.services.idempotency import IdempotencyGuard, IdempotencyResult


@lru_cache
def get_permission_resolver() -> PermissionResolver:
    return PermissionResolver()


@lru_cache
def get_idempotency_guard() -> IdempotencyGuard:
    return IdempotencyGuard()


async def authorize(
    session: AsyncSession,
    *,
    tenant_id: str,
    permission_key: str,
    token: IdentityToken | None,
) -> AuthorizationDecision:
    return await get_permission_resolver().decide(
        session, tenant_id=tenant_id, permission_key=permission_key, token=token
    )


async def authorize_any_tenant(
    session: AsyncSession,
    *,
    permission_key: str,
    token: IdentityToken | None,
) -> bool:
    return await get_permission_resolver().has_permission_in_any_tenant(
        session, permission_key=permission_key, token=token
    )


async def record_audit(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    actor_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    before: Any = None,
    after: Any = None,
) -> AuditLogEntry:
    # Joins the caller's transaction; the caller commits the mutation and the entry together.
    return await get_audit_chain().log(
        session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before=before,
        after=after,
    )


async def dedup(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    request_body: Any = None,
) -> IdempotencyResult:
    # With idempotency switched off every request is treated as first sight.
    if not get_settings().idempotency_enabled:
        return IdempotencyResult(is_duplicate=False, response_code=None)
    return await get_idempotency_guard().check_and_store(
        session, tenant_id=tenant_id, key=key, request_body=request_body
    )


async def dedup_complete(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    response_code: int,
) -> bool:
    if not get_settings().idempotency_enabled:
        return False
    return await get_idempotency_guard().record_response(
        session, tenant_id=tenant_id, key=key, response_code=response_code
    )


async def dedup_release(session: AsyncSession, *, tenant_id: str, key: str) -> bool:
    if not get_settings().idempotency_enabled:
        return False
    return await get_idempotency_guard().release(session, tenant_id=tenant_id, key=key)
