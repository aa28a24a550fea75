from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from registrycore.core.errors import StoreUnavailableError
from registrycore.domain.roles import (
    PERMISSION_SACRAMENTS_CREATE,
    PERMISSION_SACRAMENTS_VIEW,
    PERMISSION_USERS_MANAGE,
    ROLE_PRIEST,
    ROLE_SUPER_ADMIN,
    ROLE_VIEWER,
    STATUS_INACTIVE,
)
from registrycore.persistence.db import SessionLocal
from registrycore.persistence.repos import users as users_repo
from registrycore.services.auth.identity import IdentityResolver, IdentityToken
from registrycore.services.authz.cache import NS_MEMBERSHIPS, PermissionCache
from registrycore.services.authz.catalog import (
    clear_tenant_role_permission,
    set_tenant_role_permission,
)
from registrycore.services.authz.resolver import (
    REASON_GLOBAL_GRANT,
    REASON_IDENTITY_UNRESOLVED,
    REASON_NO_MEMBERSHIP,
    REASON_NOT_GRANTED,
    REASON_SUPER_ADMIN,
    REASON_TENANT_OVERRIDE,
    PermissionResolver,
)
from registrycore.services.memberships import grant_membership, revoke_membership
from registrycore.tests.utils.identity import add_membership, create_user, seed_catalog, token_for


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _resolver(cache: PermissionCache, clock: _Clock | None = None) -> PermissionResolver:
    return PermissionResolver(cache=cache, time_provider=clock)


@pytest.mark.asyncio
async def test_super_admin_bypasses_catalog() -> None:
    cache = PermissionCache()
    resolver = _resolver(cache)
    async with SessionLocal() as session:
        # No catalog rows at all: only the role decides.
        user_id = await create_user(session)
        await add_membership(session, user_id=user_id, tenant_id="t1", role=ROLE_SUPER_ADMIN)
        token = token_for(user_id)

        for permission in ("sacraments.create", "made.up.permission", PERMISSION_USERS_MANAGE):
            decision = await resolver.decide(
                session, tenant_id="t1", permission_key=permission, token=token
            )
            assert decision.allowed
            assert decision.reason == REASON_SUPER_ADMIN
        # The bypass is tenant scoped.
        assert not await resolver.can(
            session, tenant_id="t2", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token
        )


@pytest.mark.asyncio
async def test_tenant_override_applies_only_to_its_tenant() -> None:
    cache = PermissionCache()
    resolver = _resolver(cache)
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session)
        await add_membership(session, user_id=user_id, tenant_id="t1", role=ROLE_VIEWER)
        await add_membership(session, user_id=user_id, tenant_id="t2", role=ROLE_VIEWER)
        token = token_for(user_id)

        await set_tenant_role_permission(
            session,
            tenant_id="t1",
            role=ROLE_VIEWER,
            permission_key=PERMISSION_SACRAMENTS_CREATE,
            granted=True,
            actor_id=None,
            cache=cache,
        )

        in_t1 = await resolver.decide(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_CREATE, token=token
        )
        in_t2 = await resolver.decide(
            session, tenant_id="t2", permission_key=PERMISSION_SACRAMENTS_CREATE, token=token
        )
        assert (in_t1.allowed, in_t1.reason) == (True, REASON_TENANT_OVERRIDE)
        assert (in_t2.allowed, in_t2.reason) == (False, REASON_NOT_GRANTED)


@pytest.mark.asyncio
async def test_override_can_revoke_a_global_grant_and_clearing_restores_it() -> None:
    cache = PermissionCache()
    resolver = _resolver(cache)
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session)
        await add_membership(session, user_id=user_id, tenant_id="t1", role=ROLE_VIEWER)
        token = token_for(user_id)

        decision = await resolver.decide(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token
        )
        assert decision.reason == REASON_GLOBAL_GRANT

        # Decision is cached now; the write path must evict it.
        await set_tenant_role_permission(
            session,
            tenant_id="t1",
            role=ROLE_VIEWER,
            permission_key=PERMISSION_SACRAMENTS_VIEW,
            granted=False,
            actor_id=None,
            cache=cache,
        )
        assert not await resolver.can(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token
        )

        await clear_tenant_role_permission(
            session,
            tenant_id="t1",
            role=ROLE_VIEWER,
            permission_key=PERMISSION_SACRAMENTS_VIEW,
            actor_id=None,
            cache=cache,
        )
        assert await resolver.can(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token
        )


@pytest.mark.asyncio
async def test_expired_membership_is_denied_even_when_cached() -> None:
    cache = PermissionCache()
    start = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    clock = _Clock(start)
    resolver = _resolver(cache, clock)
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session)
        await add_membership(
            session,
            user_id=user_id,
            tenant_id="t1",
            role=ROLE_PRIEST,
            expires_at=start + timedelta(hours=1),
        )
        token = token_for(user_id, jti="tok-1")

        assert await resolver.can(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_CREATE, token=token
        )
        assert cache.size(NS_MEMBERSHIPS) == 1

        clock.now = start + timedelta(hours=2)
        decision = await resolver.decide(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_CREATE, token=token
        )
        assert not decision.allowed
        assert decision.reason == REASON_NO_MEMBERSHIP


@pytest.mark.asyncio
async def test_already_expired_membership_is_denied() -> None:
    resolver = _resolver(PermissionCache())
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session)
        await add_membership(
            session,
            user_id=user_id,
            tenant_id="t1",
            role=ROLE_SUPER_ADMIN,
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        assert not await resolver.can(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token_for(user_id)
        )


@pytest.mark.asyncio
async def test_revocation_is_visible_immediately() -> None:
    cache = PermissionCache()
    resolver = _resolver(cache)
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session)
        await grant_membership(
            session, user_id=user_id, tenant_id="t1", role=ROLE_PRIEST, actor_id=None, cache=cache
        )
        # Two tokens for the same user; revocation must drop both cache entries.
        first, second = token_for(user_id, jti="a"), token_for(user_id, jti="b")
        for token in (first, second):
            assert await resolver.can(
                session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token
            )

        await revoke_membership(session, user_id=user_id, tenant_id="t1", actor_id=None, cache=cache)

        for token in (first, second):
            decision = await resolver.decide(
                session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token
            )
            assert decision.reason == REASON_NO_MEMBERSHIP


@pytest.mark.asyncio
async def test_inactive_membership_grants_nothing() -> None:
    resolver = _resolver(PermissionCache())
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session)
        await add_membership(
            session, user_id=user_id, tenant_id="t1", role=ROLE_PRIEST, status=STATUS_INACTIVE
        )
        assert not await resolver.can(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token_for(user_id)
        )


@pytest.mark.asyncio
async def test_email_subjects_resolve_and_unknown_subjects_are_denied() -> None:
    resolver = _resolver(PermissionCache())
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session, email="registrar@parish.example.org")
        await add_membership(session, user_id=user_id, tenant_id="t1", role=ROLE_PRIEST)

        by_subject = IdentityToken(subject="Registrar@Parish.Example.org")
        by_claim = IdentityToken(subject="opaque-idp-subject", email="registrar@parish.example.org")
        unknown = IdentityToken(subject="opaque-idp-subject")

        for token in (by_subject, by_claim):
            assert await resolver.can(
                session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token
            )
        decision = await resolver.decide(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=unknown
        )
        assert decision.reason == REASON_IDENTITY_UNRESOLVED
        missing = await resolver.decide(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=None
        )
        assert missing.reason == REASON_IDENTITY_UNRESOLVED


@pytest.mark.asyncio
async def test_non_ascii_digit_subjects_never_resolve_to_numeric_ids() -> None:
    resolver = _resolver(PermissionCache())
    async with SessionLocal() as session:
        await seed_catalog(session)
        await users_repo.add_user(
            session, user_id="12", email="numeric@parish.example.org", full_name="Numeric User"
        )
        await session.commit()
        await add_membership(session, user_id="12", tenant_id="t1", role=ROLE_PRIEST)

        assert await resolver.can(
            session, tenant_id="t1", permission_key=PERMISSION_SACRAMENTS_VIEW, token=token_for("12")
        )
        for subject in ("\u0661\u0662", "\u00b2"):
            decision = await resolver.decide(
                session,
                tenant_id="t1",
                permission_key=PERMISSION_SACRAMENTS_VIEW,
                token=IdentityToken(subject=subject),
            )
            assert not decision.allowed
            assert decision.reason == REASON_IDENTITY_UNRESOLVED


@pytest.mark.asyncio
async def test_any_tenant_check_and_active_memberships() -> None:
    cache = PermissionCache()
    resolver = _resolver(cache)
    async with SessionLocal() as session:
        await seed_catalog(session)
        user_id = await create_user(session)
        await add_membership(session, user_id=user_id, tenant_id="t1", role=ROLE_VIEWER)
        await add_membership(session, user_id=user_id, tenant_id="t2", role=ROLE_PRIEST)
        await add_membership(
            session,
            user_id=user_id,
            tenant_id="t3",
            role=ROLE_SUPER_ADMIN,
            expires_at=datetime.now(timezone.utc) - timedelta(days=1),
        )
        token = token_for(user_id)

        memberships = await resolver.active_memberships(session, token=token)
        assert [(m.tenant_id, m.role) for m in memberships] == [("t1", ROLE_VIEWER), ("t2", ROLE_PRIEST)]

        assert await resolver.has_permission_in_any_tenant(
            session, permission_key=PERMISSION_SACRAMENTS_CREATE, token=token
        )
        # Only the expired SUPER_ADMIN membership would grant this.
        assert not await resolver.has_permission_in_any_tenant(
            session, permission_key=PERMISSION_USERS_MANAGE, token=token
        )
        assert not await resolver.has_permission_in_any_tenant(
            session, permission_key=PERMISSION_SACRAMENTS_VIEW, token=None
        )


@pytest.mark.asyncio
async def test_store_failures_raise_instead_of_denying() -> None:
    async def _broken_store(session, token):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    resolver = PermissionResolver(
        cache=PermissionCache(), identity_resolver=IdentityResolver([_broken_store])
    )
    async with SessionLocal() as session:
        with pytest.raises(StoreUnavailableError):
            await resolver.can(
                session,
                tenant_id="t1",
                permission_key=PERMISSION_SACRAMENTS_VIEW,
                token=token_for("1"),
            )
