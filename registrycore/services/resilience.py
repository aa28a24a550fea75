from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from registrycore.core.errors import StoreUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, asyncio.TimeoutError, OSError)


@dataclass(frozen=True)
class RetryPolicy:
    # Bounded store-level retry; business calls are never retried here.
    max_attempts: int
    backoff_ms: int


def backoff_seconds(policy: RetryPolicy, attempt: int) -> float:
    # Exponential backoff with jitter so racing retries spread out.
    jitter = random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** max(attempt - 1, 0)) * jitter


async def call_store(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    timeout_ms: int | None = None,
) -> T:
    # Map store and driver failures to StoreUnavailableError so callers never read them as a deny.
    try:
        if timeout_ms and timeout_ms > 0:
            return await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)
        return await func()
    except StoreUnavailableError:
        raise
    except (SQLAlchemyError, *TransientException) as exc:
        logger.error("store_call_failed operation=%s error=%s", operation, type(exc).__name__)
        raise StoreUnavailableError(f"{operation} failed: {type(exc).__name__}") from exc
