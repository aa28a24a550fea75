from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.apps.api.response import replay_response
from registrycore.core.config import get_settings
from registrycore.core.errors import StoreUnavailableError
from registrycore.services.access import dedup, dedup_complete, dedup_release
from registrycore.services.resilience import call_store


logger = logging.getLogger(__name__)


async def claim_or_replay(
    db: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    request_body: Any,
) -> Response | None:
    """Claim the key for this request, or build the response for a retry.

    Returns None when the handler should run. A retry whose original request
    has not finished yet gets a 409; clients back off and try again.
    """
    result = await dedup(db, tenant_id=tenant_id, key=key, request_body=request_body)
    if not result.is_duplicate:
        return None
    if result.payload_mismatch and get_settings().idempotency_reject_payload_mismatch:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "IDEMPOTENCY_KEY_CONFLICT",
                "message": "Idempotency-Key already used with different payload",
            },
        )
    if result.response_code is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "IDEMPOTENCY_IN_PROGRESS",
                "message": "A request with this Idempotency-Key is still in progress",
            },
        )
    logger.info("idempotent_replay tenant_id=%s status=%s", tenant_id, result.response_code)
    return replay_response(result.response_code)


async def complete(db: AsyncSession, *, tenant_id: str, key: str, response_code: int) -> None:
    await dedup_complete(db, tenant_id=tenant_id, key=key, response_code=response_code)


@asynccontextmanager
async def release_on_failure(db: AsyncSession, *, tenant_id: str, key: str) -> AsyncIterator[None]:
    """Give the key back when the handler fails before recording an outcome.

    Without this a failed request would leave its claim in flight for the
    whole TTL and every retry would be answered with a 409.
    """
    try:
        yield
    except Exception:
        try:
            await call_store(db.rollback, operation="idempotency_release_rollback")
            await dedup_release(db, tenant_id=tenant_id, key=key)
        except StoreUnavailableError:
            # The original failure is what the client needs to see.
            logger.warning("idempotency_release_failed tenant_id=%s", tenant_id)
        raise
