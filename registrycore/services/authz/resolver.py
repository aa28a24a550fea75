from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.core.config import get_settings
from registrycore.domain.models import Membership, as_utc, utc_now
from registrycore.domain.roles import ROLE_SUPER_ADMIN, STATUS_ACTIVE
from registrycore.persistence.guards import require_tenant_id
from registrycore.persistence.repos import catalog as catalog_repo
from registrycore.persistence.repos import memberships as memberships_repo
from registrycore.services.auth.identity import IdentityResolver, IdentityToken
from registrycore.services.authz.cache import (
    MISS,
    NS_MEMBERSHIPS,
    NS_ROLE_PERMISSIONS,
    NS_TENANT_ROLE_PERMISSIONS,
    PermissionCache,
    get_permission_cache,
)
from registrycore.services.resilience import call_store


logger = logging.getLogger(__name__)

REASON_SUPER_ADMIN = "super_admin"
REASON_TENANT_OVERRIDE = "tenant_override"
REASON_GLOBAL_GRANT = "global_grant"
REASON_NOT_GRANTED = "not_granted"
REASON_NO_MEMBERSHIP = "no_membership"
REASON_IDENTITY_UNRESOLVED = "identity_unresolved"


@dataclass(frozen=True)
class MembershipSnapshot:
    # Detached copy of a membership row; safe to share across sessions and threads.
    user_id: str
    tenant_id: str
    role: str
    status: str
    expires_at: datetime | None

    @classmethod
    def from_row(cls, row: Membership) -> MembershipSnapshot:
        return cls(
            user_id=row.user_id,
            tenant_id=row.tenant_id,
            role=row.role,
            status=row.status,
            expires_at=as_utc(row.expires_at),
        )

    def is_current(self, now: datetime) -> bool:
        if self.status != STATUS_ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: str
    user_id: str | None = None
    tenant_id: str | None = None
    role: str | None = None


class PermissionResolver:
    def __init__(
        self,
        *,
        cache: PermissionCache | None = None,
        identity_resolver: IdentityResolver | None = None,
        time_provider: Callable[[], datetime] | None = None,
        store_timeout_ms: int | None = None,
    ) -> None:
        self._cache = cache or get_permission_cache()
        self._identity = identity_resolver or IdentityResolver()
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or utc_now
        self._store_timeout_ms = (
            store_timeout_ms if store_timeout_ms is not None else get_settings().authz_store_timeout_ms
        )

    @property
    def cache(self) -> PermissionCache:
        return self._cache

    async def can(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        permission_key: str,
        token: IdentityToken | None,
    ) -> bool:
        decision = await self.decide(
            session, tenant_id=tenant_id, permission_key=permission_key, token=token
        )
        return decision.allowed

    async def decide(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        permission_key: str,
        token: IdentityToken | None,
    ) -> AuthorizationDecision:
        # Denials are return values; only store failures raise.
        require_tenant_id(tenant_id)
        if token is None:
            return AuthorizationDecision(False, REASON_IDENTITY_UNRESOLVED, tenant_id=tenant_id)
        user_id = await self._resolve_user_id(session, token)
        if user_id is None:
            return AuthorizationDecision(False, REASON_IDENTITY_UNRESOLVED, tenant_id=tenant_id)

        membership = await self.membership(
            session, user_id=user_id, tenant_id=tenant_id, token_id=token.cache_token_id
        )
        if membership is None or not membership.is_current(self._time_provider()):
            return AuthorizationDecision(
                False, REASON_NO_MEMBERSHIP, user_id=user_id, tenant_id=tenant_id
            )
        decision = await self._evaluate_role(
            session, tenant_id=tenant_id, role=membership.role, permission_key=permission_key
        )
        if not decision.allowed:
            logger.debug(
                "authz_denied tenant_id=%s user_id=%s role=%s permission=%s reason=%s",
                tenant_id,
                user_id,
                membership.role,
                permission_key,
                decision.reason,
            )
        return AuthorizationDecision(
            decision.allowed,
            decision.reason,
            user_id=user_id,
            tenant_id=tenant_id,
            role=membership.role,
        )

    async def has_permission_in_any_tenant(
        self,
        session: AsyncSession,
        *,
        permission_key: str,
        token: IdentityToken | None,
    ) -> bool:
        # Cross-tenant admin actions have no tenant context yet; any granting tenant suffices.
        for membership in await self.active_memberships(session, token=token):
            decision = await self._evaluate_role(
                session,
                tenant_id=membership.tenant_id,
                role=membership.role,
                permission_key=permission_key,
            )
            if decision.allowed:
                return True
        return False

    async def active_memberships(
        self,
        session: AsyncSession,
        *,
        token: IdentityToken | None,
    ) -> list[MembershipSnapshot]:
        if token is None:
            return []
        user_id = await self._resolve_user_id(session, token)
        if user_id is None:
            return []
        rows = await call_store(
            lambda: memberships_repo.list_active_memberships_for_user(session, user_id=user_id),
            operation="list_active_memberships",
            timeout_ms=self._store_timeout_ms,
        )
        now = self._time_provider()
        snapshots = [MembershipSnapshot.from_row(row) for row in rows]
        return [snapshot for snapshot in snapshots if snapshot.is_current(now)]

    async def role_permissions(self, session: AsyncSession, role: str) -> frozenset[str]:
        cached = self._cache.get(NS_ROLE_PERMISSIONS, role)
        if cached is not MISS:
            return cached
        generation = self._cache.generation(NS_ROLE_PERMISSIONS)
        keys = await call_store(
            lambda: catalog_repo.list_role_permission_keys(session, role),
            operation="list_role_permissions",
            timeout_ms=self._store_timeout_ms,
        )
        self._cache.set(NS_ROLE_PERMISSIONS, role, keys, generation=generation)
        return keys

    async def tenant_override(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        role: str,
        permission_key: str,
    ) -> bool | None:
        # None means no override row; True/False is the tenant's explicit answer.
        cache_key = (tenant_id, role, permission_key)
        cached = self._cache.get(NS_TENANT_ROLE_PERMISSIONS, cache_key)
        if cached is not MISS:
            return cached
        generation = self._cache.generation(NS_TENANT_ROLE_PERMISSIONS)
        row = await call_store(
            lambda: catalog_repo.get_tenant_role_permission(
                session, tenant_id=tenant_id, role=role, permission_key=permission_key
            ),
            operation="get_tenant_role_permission",
            timeout_ms=self._store_timeout_ms,
        )
        granted = None if row is None else bool(row.granted)
        self._cache.set(NS_TENANT_ROLE_PERMISSIONS, cache_key, granted, generation=generation)
        return granted

    async def membership(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        tenant_id: str,
        token_id: str,
    ) -> MembershipSnapshot | None:
        # Keyed by token id so a reissued token never rides on an older token's entry.
        cache_key = (user_id, tenant_id, token_id)
        cached = self._cache.get(NS_MEMBERSHIPS, cache_key)
        if cached is not MISS:
            return cached
        generation = self._cache.generation(NS_MEMBERSHIPS)
        row = await call_store(
            lambda: memberships_repo.get_active_membership(
                session, user_id=user_id, tenant_id=tenant_id
            ),
            operation="get_active_membership",
            timeout_ms=self._store_timeout_ms,
        )
        snapshot = None if row is None else MembershipSnapshot.from_row(row)
        self._cache.set(NS_MEMBERSHIPS, cache_key, snapshot, generation=generation)
        return snapshot

    async def _resolve_user_id(self, session: AsyncSession, token: IdentityToken) -> str | None:
        resolution = await call_store(
            lambda: self._identity.resolve(session, token),
            operation="resolve_identity",
            timeout_ms=self._store_timeout_ms,
        )
        return resolution.user_id

    async def _evaluate_role(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        role: str,
        permission_key: str,
    ) -> AuthorizationDecision:
        if role == ROLE_SUPER_ADMIN:
            return AuthorizationDecision(True, REASON_SUPER_ADMIN)
        override = await self.tenant_override(
            session, tenant_id=tenant_id, role=role, permission_key=permission_key
        )
        if override is not None:
            return AuthorizationDecision(override, REASON_TENANT_OVERRIDE)
        if permission_key in await self.role_permissions(session, role):
            return AuthorizationDecision(True, REASON_GLOBAL_GRANT)
        return AuthorizationDecision(False, REASON_NOT_GRANTED)
