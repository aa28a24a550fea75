"""Tamper-evident audit log with one hash chain per tenant lineage.

Entries are written in the caller's session, inside a savepoint, so the audit
row commits or rolls back together with the business mutation it describes.
Each hashed entry claims the next slot of its lineage under a unique
constraint; an appender that loses a race re-reads the head and retries.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from functools import lru_cache
import hashlib
import json
import logging
from typing import Any, Callable, Mapping

from pydantic import BaseModel
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.core.config import get_settings
from registrycore.core.errors import AuditChainConflictError, ChainVerificationUnavailableError
from registrycore.domain.models import AuditLogEntry, utc_now
from registrycore.persistence.guards import chain_key_for
from registrycore.persistence.repos import audit as audit_repo
from registrycore.services.resilience import RetryPolicy, backoff_seconds, call_store


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"
_VERIFY_BATCH_SIZE = 500


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_snapshot(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_snapshot(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_snapshot(item) for item in value]
    return value


def canonical_json(value: Any) -> str:
    # Stable key order and compact separators; the hash depends on this exact text.
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def to_snapshot(value: Any) -> dict[str, Any] | None:
    # Convert before/after states to plain JSON objects.
    if value is None:
        return None
    if isinstance(value, BaseModel):
        raw: Any = value.model_dump(mode="json")
    elif is_dataclass(value) and not isinstance(value, type):
        raw = asdict(value)
    elif isinstance(value, Mapping):
        raw = dict(value)
    else:
        mapper = sa_inspect(value, raiseerr=False)
        if mapper is None or not hasattr(mapper, "mapper"):
            raise TypeError(f"Cannot snapshot {type(value).__name__} for audit")
        raw = {attr.key: getattr(value, attr.key) for attr in mapper.mapper.column_attrs}
    # Round-trip through canonical JSON so stored values match what was hashed.
    return sanitize_snapshot(json.loads(canonical_json(raw)))


def compute_entry_hash(
    *,
    action: str,
    entity_type: str,
    entity_id: str | None,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    prev_hash: str | None,
) -> str:
    parts = [action, entity_type]
    if entity_id is not None:
        parts.append(entity_id)
    if before is not None:
        parts.append(canonical_json(before))
    if after is not None:
        parts.append(canonical_json(after))
    if prev_hash is not None:
        parts.append(prev_hash)
    return hashlib.sha256("".join(parts).encode("utf-8")).hexdigest()


def recompute_hash(entry: AuditLogEntry) -> str:
    return compute_entry_hash(
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        before=entry.before_json,
        after=entry.after_json,
        prev_hash=entry.prev_hash,
    )


@dataclass(frozen=True)
class IntegrityViolation:
    entry_id: int
    chain_seq: int | None
    reason: str


@dataclass
class ChainVerificationReport:
    tenant_id: str | None
    checked: int = 0
    unchained: int = 0
    head_hash: str | None = None
    violations: list[IntegrityViolation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


class AuditChain:
    def __init__(
        self,
        *,
        hash_chain_enabled: bool | None = None,
        max_attempts: int | None = None,
        backoff_ms: int = 10,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._enabled = (
            settings.audit_hash_chain_enabled if hash_chain_enabled is None else hash_chain_enabled
        )
        self._retry = RetryPolicy(
            max_attempts=max(1, max_attempts if max_attempts is not None else settings.audit_chain_max_attempts),
            backoff_ms=backoff_ms,
        )
        self._time_provider = time_provider or utc_now

    @property
    def hash_chain_enabled(self) -> bool:
        return self._enabled

    async def log(
        self,
        session: AsyncSession,
        *,
        tenant_id: str | None,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None = None,
        before: Any = None,
        after: Any = None,
        commit: bool = False,
    ) -> AuditLogEntry:
        # Failures raise: a committed mutation without its audit entry is not acceptable.
        before_json = to_snapshot(before)
        after_json = to_snapshot(after)
        chain_key = chain_key_for(tenant_id)

        attempt = 1
        while True:
            entry = await call_store(
                lambda: self._try_append(
                    session,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    before_json=before_json,
                    after_json=after_json,
                    chain_key=chain_key,
                ),
                operation="audit_append",
            )
            if entry is not None:
                break
            if attempt >= self._retry.max_attempts:
                logger.error(
                    "audit_chain_conflict_exhausted chain_key=%s attempts=%s", chain_key, attempt
                )
                raise AuditChainConflictError(f"Chain head for {chain_key} kept moving")
            logger.warning("audit_chain_conflict chain_key=%s attempt=%s", chain_key, attempt)
            await asyncio.sleep(backoff_seconds(self._retry, attempt))
            attempt += 1

        if commit:
            await call_store(session.commit, operation="audit_commit")
        return entry

    async def _try_append(
        self,
        session: AsyncSession,
        *,
        tenant_id: str | None,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        before_json: dict[str, Any] | None,
        after_json: dict[str, Any] | None,
        chain_key: str,
    ) -> AuditLogEntry | None:
        # Returns None when another writer claimed the slot first.
        prev_hash: str | None = None
        chain_seq: int | None = None
        digest: str | None = None
        if self._enabled:
            head = await audit_repo.get_chain_head(session, chain_key=chain_key)
            prev_hash = head.hash if head is not None else None
            chain_seq = (head.chain_seq or 0) + 1 if head is not None else 1
            digest = compute_entry_hash(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                before=before_json,
                after=after_json,
                prev_hash=prev_hash,
            )
        entry = AuditLogEntry(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before_json=before_json,
            after_json=after_json,
            ts=self._time_provider(),
            hash=digest,
            prev_hash=prev_hash,
            chain_key=chain_key,
            chain_seq=chain_seq,
        )
        try:
            async with session.begin_nested():
                session.add(entry)
        except IntegrityError:
            return None
        return entry

    async def verify(self, session: AsyncSession, *, tenant_id: str | None) -> ChainVerificationReport:
        """Recompute one lineage forward and report every broken link.

        Reports, never repairs. Entries written while chaining was disabled
        carry no hash and are counted as ``unchained`` rather than verified.
        """
        if not self._enabled:
            raise ChainVerificationUnavailableError(
                "Audit hash chaining is disabled; integrity cannot be verified"
            )
        chain_key = chain_key_for(tenant_id)
        report = ChainVerificationReport(tenant_id=tenant_id)
        report.unchained = await call_store(
            lambda: audit_repo.count_unchained(session, chain_key=chain_key),
            operation="audit_count_unchained",
        )

        previous: AuditLogEntry | None = None
        after_seq = 0
        while True:
            batch = await call_store(
                lambda: audit_repo.list_chain_slice(
                    session, chain_key=chain_key, after_seq=after_seq, limit=_VERIFY_BATCH_SIZE
                ),
                operation="audit_list_chain",
            )
            if not batch:
                break
            for entry in batch:
                self._check_link(report, previous, entry)
                previous = entry
                report.checked += 1
            after_seq = batch[-1].chain_seq or after_seq

        report.head_hash = previous.hash if previous is not None else None
        if report.violations:
            logger.error(
                "audit_chain_integrity_violation chain_key=%s violations=%s",
                chain_key,
                len(report.violations),
            )
        return report

    def _check_link(
        self,
        report: ChainVerificationReport,
        previous: AuditLogEntry | None,
        entry: AuditLogEntry,
    ) -> None:
        expected_seq = (previous.chain_seq or 0) + 1 if previous is not None else 1
        if entry.chain_seq != expected_seq:
            report.violations.append(
                IntegrityViolation(entry.id, entry.chain_seq, f"sequence_gap expected={expected_seq}")
            )
        expected_prev = previous.hash if previous is not None else None
        if entry.prev_hash != expected_prev:
            report.violations.append(IntegrityViolation(entry.id, entry.chain_seq, "prev_hash_mismatch"))
        if entry.hash != recompute_hash(entry):
            report.violations.append(IntegrityViolation(entry.id, entry.chain_seq, "hash_mismatch"))


@lru_cache
def get_audit_chain() -> AuditChain:
    return AuditChain()


@dataclass(frozen=True)
class CursorPage:
    items: list[AuditLogEntry]
    next_cursor: int | None
    has_more: bool


async def list_entries_page(
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
) -> CursorPage:
    # Fetch one extra row to learn whether another page exists.
    rows = await call_store(
        lambda: audit_repo.list_entries(
            session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            ts_from=ts_from,
            ts_to=ts_to,
            cursor=cursor,
            limit=limit + 1,
        ),
        operation="audit_list_entries",
    )
    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = items[-1].id if has_more and items else None
    return CursorPage(items=items, next_cursor=next_cursor, has_more=has_more)
