from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import json
import logging
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.core.config import get_settings
from registrycore.core.errors import IdempotencyKeyInvalidError, StoreUnavailableError
from registrycore.domain.models import IdempotencyRecord, as_utc, utc_now
from registrycore.persistence.guards import require_tenant_id
from registrycore.persistence.repos import idempotency as idempotency_repo
from registrycore.services.resilience import RetryPolicy, backoff_seconds, call_store


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


@dataclass(frozen=True)
class IdempotencyResult:
    is_duplicate: bool
    # Null on a duplicate means the original request is still in flight or never finished.
    response_code: int | None
    payload_mismatch: bool = False


def compute_request_hash(payload: Any) -> str | None:
    # Hash request payloads deterministically without persisting sensitive data.
    if payload is None:
        return None
    if isinstance(payload, bytes):
        data = payload
    elif isinstance(payload, str):
        data = payload.encode("utf-8")
    else:
        data = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


class IdempotencyGuard:
    def __init__(
        self,
        *,
        ttl_hours: int | None = None,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        key_max_length: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.idempotency_ttl_hours)
        self._retry = RetryPolicy(
            max_attempts=max(1, max_attempts if max_attempts is not None else settings.idempotency_max_attempts),
            backoff_ms=backoff_ms if backoff_ms is not None else settings.idempotency_retry_backoff_ms,
        )
        self._key_max_length = key_max_length or settings.idempotency_key_max_length
        # Allow time injection for deterministic TTL tests.
        self._time_provider = time_provider or utc_now

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def normalize_key(self, value: str | None) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise IdempotencyKeyInvalidError("Idempotency-Key is empty")
        if len(cleaned) > self._key_max_length:
            raise IdempotencyKeyInvalidError(
                f"Idempotency-Key exceeds {self._key_max_length} characters"
            )
        return cleaned

    async def check_and_store(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        key: str,
        request_body: Any = None,
    ) -> IdempotencyResult:
        """Claim ``(tenant_id, key)`` or report that it was already claimed.

        The unique constraint decides: the insert either wins, or fails with an
        integrity error and the request is a duplicate. This method owns its
        transaction and commits on every path.
        """
        require_tenant_id(tenant_id)
        normalized = self.normalize_key(key)
        request_hash = compute_request_hash(request_body)

        attempt = 1
        while True:
            now = self._time_provider()
            result = await call_store(
                lambda: self._attempt_claim(
                    session,
                    tenant_id=tenant_id,
                    key=normalized,
                    request_hash=request_hash,
                    now=now,
                ),
                operation="idempotency_check_and_store",
            )
            if result is not None:
                return result
            if attempt >= self._retry.max_attempts:
                logger.error(
                    "idempotency_claim_unsettled tenant_id=%s attempts=%s", tenant_id, attempt
                )
                raise StoreUnavailableError("Idempotency record kept changing during claim")
            logger.info("idempotency_claim_retry tenant_id=%s attempt=%s", tenant_id, attempt)
            await asyncio.sleep(backoff_seconds(self._retry, attempt))
            attempt += 1

    async def _attempt_claim(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        key: str,
        request_hash: str | None,
        now: datetime,
    ) -> IdempotencyResult | None:
        # None asks the caller to retry: the conflicting record vanished or had expired.
        cutoff = now - self._ttl
        try:
            expired = await idempotency_repo.delete_expired_record(
                session, tenant_id=tenant_id, key=key, cutoff=cutoff
            )
            if expired:
                logger.info("idempotency_record_expired tenant_id=%s", tenant_id)
            session.add(
                IdempotencyRecord(
                    tenant_id=tenant_id,
                    idem_key=key,
                    request_hash=request_hash,
                    response_code=None,
                    created_at=now,
                )
            )
            await session.commit()
            return IdempotencyResult(is_duplicate=False, response_code=None)
        except IntegrityError:
            await session.rollback()

        existing = await idempotency_repo.get_record(session, tenant_id=tenant_id, key=key)
        # End the read so the connection does not pin a transaction.
        await session.commit()
        if existing is None:
            return None
        if as_utc(existing.created_at) <= cutoff:
            return None
        mismatch = (
            request_hash is not None
            and existing.request_hash is not None
            and existing.request_hash != request_hash
        )
        if mismatch:
            logger.warning("idempotency_payload_mismatch tenant_id=%s", tenant_id)
        return IdempotencyResult(
            is_duplicate=True,
            response_code=existing.response_code,
            payload_mismatch=mismatch,
        )

    async def record_response(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        key: str,
        response_code: int,
    ) -> bool:
        require_tenant_id(tenant_id)
        normalized = self.normalize_key(key)

        async def _record() -> int:
            updated = await idempotency_repo.set_response_code(
                session, tenant_id=tenant_id, key=normalized, response_code=response_code
            )
            await session.commit()
            return updated

        updated = await call_store(_record, operation="idempotency_record_response")
        if not updated:
            logger.warning("idempotency_record_missing tenant_id=%s", tenant_id)
        return bool(updated)

    async def release(self, session: AsyncSession, *, tenant_id: str, key: str) -> bool:
        # Give back a claim whose request failed before recording an outcome.
        require_tenant_id(tenant_id)
        normalized = self.normalize_key(key)

        async def _release() -> int:
            deleted = await idempotency_repo.delete_pending_record(
                session, tenant_id=tenant_id, key=normalized
            )
            await session.commit()
            return deleted

        deleted = await call_store(_release, operation="idempotency_release")
        if deleted:
            logger.info("idempotency_released tenant_id=%s", tenant_id)
        return bool(deleted)

    async def prune_expired(self, session: AsyncSession) -> int:
        # Remove expired idempotency records to keep storage bounded.
        cutoff = self._time_provider() - self._ttl

        async def _prune() -> int:
            deleted = await idempotency_repo.prune_expired_records(session, cutoff=cutoff)
            await session.commit()
            return deleted

        return await call_store(_prune, operation="idempotency_prune")
