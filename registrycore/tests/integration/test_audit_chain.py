from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import delete, select, update

from registrycore.core.errors import AuditChainConflictError, ChainVerificationUnavailableError
from registrycore.domain.models import AuditLogEntry, Membership
from registrycore.persistence.db import SessionLocal
from registrycore.persistence.repos import audit as audit_repo
from registrycore.services.audit import AuditChain, compute_entry_hash, list_entries_page


async def _log_three(chain: AuditChain, session, tenant_id: str | None = "t1") -> list[AuditLogEntry]:
    entries = []
    for index in range(3):
        entry = await chain.log(
            session,
            tenant_id=tenant_id,
            actor_id="actor-1",
            action="UPDATE",
            entity_type="SacramentEvent",
            entity_id=f"ev-{index}",
            before={"status": "DRAFT", "index": index},
            after={"status": "ACTIVE", "index": index},
            commit=True,
        )
        entries.append(entry)
    return entries


@pytest.mark.asyncio
async def test_entries_link_to_their_predecessor() -> None:
    chain = AuditChain(hash_chain_enabled=True)
    async with SessionLocal() as session:
        first, second, third = await _log_three(chain, session)

        assert first.prev_hash is None
        assert second.prev_hash == first.hash
        assert third.prev_hash == second.hash
        assert [first.chain_seq, second.chain_seq, third.chain_seq] == [1, 2, 3]
        assert third.hash == compute_entry_hash(
            action="UPDATE",
            entity_type="SacramentEvent",
            entity_id="ev-2",
            before={"index": 2, "status": "DRAFT"},
            after={"index": 2, "status": "ACTIVE"},
            prev_hash=second.hash,
        )

        report = await chain.verify(session, tenant_id="t1")
        assert report.ok
        assert report.checked == 3
        assert report.head_hash == third.hash


@pytest.mark.asyncio
async def test_tampered_entry_is_reported() -> None:
    chain = AuditChain(hash_chain_enabled=True)
    async with SessionLocal() as session:
        _, second, _ = await _log_three(chain, session)
        await session.execute(
            update(AuditLogEntry)
            .where(AuditLogEntry.id == second.id)
            .values(after_json={"status": "FORGED", "index": 1})
        )
        await session.commit()
        session.expire_all()

        report = await chain.verify(session, tenant_id="t1")
        assert not report.ok
        assert [(v.entry_id, v.reason) for v in report.violations] == [(second.id, "hash_mismatch")]


@pytest.mark.asyncio
async def test_deleted_entry_breaks_the_chain() -> None:
    chain = AuditChain(hash_chain_enabled=True)
    async with SessionLocal() as session:
        _, second, third = await _log_three(chain, session)
        await session.execute(delete(AuditLogEntry).where(AuditLogEntry.id == second.id))
        await session.commit()

        report = await chain.verify(session, tenant_id="t1")
        reasons = {v.reason for v in report.violations if v.entry_id == third.id}
        assert "prev_hash_mismatch" in reasons
        assert "sequence_gap expected=2" in reasons


@pytest.mark.asyncio
async def test_lineages_are_independent() -> None:
    chain = AuditChain(hash_chain_enabled=True)
    async with SessionLocal() as session:
        t1 = await _log_three(chain, session, tenant_id="t1")
        t2_first = await chain.log(
            session, tenant_id="t2", actor_id=None, action="CREATE", entity_type="Person", commit=True
        )
        global_first = await chain.log(
            session, tenant_id=None, actor_id=None, action="GRANT", entity_type="RolePermission", commit=True
        )

        assert t2_first.prev_hash is None
        assert t2_first.chain_seq == 1
        assert global_first.prev_hash is None
        assert global_first.chain_key == "global"
        assert t1[-1].chain_key == "tenant:t1"

        assert (await chain.verify(session, tenant_id="t2")).checked == 1
        assert (await chain.verify(session, tenant_id=None)).checked == 1


@pytest.mark.asyncio
async def test_entry_rolls_back_with_the_caller_transaction() -> None:
    chain = AuditChain(hash_chain_enabled=True)
    async with SessionLocal() as session:
        membership = Membership(id="m-rollback", user_id="u-1", tenant_id="t1", role="VIEWER")
        session.add(membership)
        await chain.log(
            session,
            tenant_id="t1",
            actor_id="actor-1",
            action="CREATE",
            entity_type="Membership",
            entity_id=membership.id,
            after=membership,
        )
        await session.rollback()

        rows = (await session.execute(select(AuditLogEntry))).scalars().all()
        assert rows == []
        assert await session.get(Membership, "m-rollback") is None


@pytest.mark.asyncio
async def test_disabled_chain_writes_unhashed_entries_and_refuses_verification() -> None:
    disabled = AuditChain(hash_chain_enabled=False)
    enabled = AuditChain(hash_chain_enabled=True)
    async with SessionLocal() as session:
        entry = await disabled.log(
            session, tenant_id="t1", actor_id=None, action="CREATE", entity_type="Person", commit=True
        )
        assert entry.hash is None
        assert entry.prev_hash is None
        assert entry.chain_seq is None

        with pytest.raises(ChainVerificationUnavailableError):
            await disabled.verify(session, tenant_id="t1")

        # Entries written while chaining was off are counted, not verified.
        await enabled.log(
            session, tenant_id="t1", actor_id=None, action="UPDATE", entity_type="Person", commit=True
        )
        report = await enabled.verify(session, tenant_id="t1")
        assert report.ok
        assert report.checked == 1
        assert report.unchained == 1


@pytest.mark.asyncio
async def test_listing_pages_forward_by_id() -> None:
    chain = AuditChain(hash_chain_enabled=True)
    async with SessionLocal() as session:
        for index in range(5):
            await chain.log(
                session,
                tenant_id="t1",
                actor_id="alice" if index % 2 == 0 else "bob",
                action="UPDATE",
                entity_type="Person",
                entity_id=f"p-{index}",
                commit=True,
            )
        await chain.log(
            session, tenant_id="t2", actor_id="alice", action="UPDATE", entity_type="Person", commit=True
        )

        first = await list_entries_page(session, tenant_id="t1", limit=2)
        assert [e.entity_id for e in first.items] == ["p-0", "p-1"]
        assert first.has_more
        second = await list_entries_page(session, tenant_id="t1", cursor=first.next_cursor, limit=2)
        third = await list_entries_page(session, tenant_id="t1", cursor=second.next_cursor, limit=2)
        assert [e.entity_id for e in third.items] == ["p-4"]
        assert not third.has_more
        assert third.next_cursor is None

        alice = await list_entries_page(session, tenant_id="t1", actor_id="alice", limit=10)
        assert [e.entity_id for e in alice.items] == ["p-0", "p-2", "p-4"]


@pytest.mark.asyncio
async def test_parallel_appends_on_one_tenant_form_a_single_chain() -> None:
    chain = AuditChain(hash_chain_enabled=True)

    async def _append(index: int) -> int | None:
        # Each writer owns its session, as concurrent requests would.
        async with SessionLocal() as session:
            entry = await chain.log(
                session,
                tenant_id="t1",
                actor_id=f"actor-{index}",
                action="CREATE",
                entity_type="SacramentEvent",
                entity_id=f"ev-{index}",
                after={"index": index},
                commit=True,
            )
            return entry.chain_seq

    slots = await asyncio.gather(*(_append(index) for index in range(8)))
    assert sorted(slots) == list(range(1, 9))

    async with SessionLocal() as session:
        report = await chain.verify(session, tenant_id="t1")
    assert report.ok
    assert report.checked == 8


@pytest.mark.asyncio
async def test_append_behind_a_stale_head_retries_into_the_next_slot(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    chain = AuditChain(hash_chain_enabled=True, max_attempts=3, backoff_ms=1)
    real_get_chain_head = audit_repo.get_chain_head
    reads: list[str] = []

    async def _stale_once(session, *, chain_key):
        # The first read misses the entry another writer just committed.
        reads.append(chain_key)
        if len(reads) == 1:
            return None
        return await real_get_chain_head(session, chain_key=chain_key)

    async with SessionLocal() as session:
        first = await chain.log(
            session, tenant_id="t1", actor_id=None, action="CREATE", entity_type="Person", commit=True
        )
        monkeypatch.setattr(audit_repo, "get_chain_head", _stale_once)
        second = await chain.log(
            session, tenant_id="t1", actor_id=None, action="UPDATE", entity_type="Person", commit=True
        )

        assert reads == ["tenant:t1", "tenant:t1"]
        assert second.chain_seq == 2
        assert second.prev_hash == first.hash
        report = await chain.verify(session, tenant_id="t1")
        assert report.ok
        assert report.checked == 2


@pytest.mark.asyncio
async def test_append_gives_up_when_the_head_keeps_moving(monkeypatch: pytest.MonkeyPatch) -> None:
    chain = AuditChain(hash_chain_enabled=True, max_attempts=3, backoff_ms=1)
    reads: list[str] = []

    async def _always_stale(session, *, chain_key):
        reads.append(chain_key)
        return None

    async with SessionLocal() as session:
        await chain.log(
            session, tenant_id="t1", actor_id=None, action="CREATE", entity_type="Person", commit=True
        )
        monkeypatch.setattr(audit_repo, "get_chain_head", _always_stale)
        with pytest.raises(AuditChainConflictError):
            await chain.log(
                session, tenant_id="t1", actor_id=None, action="UPDATE", entity_type="Person"
            )
        assert len(reads) == 3
        await session.rollback()

        rows = (await session.execute(select(AuditLogEntry))).scalars().all()
        assert [row.action for row in rows] == ["CREATE"]
