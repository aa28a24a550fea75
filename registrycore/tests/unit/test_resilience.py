from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from registrycore.core.errors import StoreUnavailableError
from registrycore.services.resilience import RetryPolicy, backoff_seconds, call_store


@pytest.mark.asyncio
async def test_call_store_maps_driver_errors() -> None:
    async def _boom() -> int:
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    with pytest.raises(StoreUnavailableError):
        await call_store(_boom, operation="load_catalog")


@pytest.mark.asyncio
async def test_call_store_enforces_timeout() -> None:
    async def _slow() -> int:
        await asyncio.sleep(1)
        return 1

    with pytest.raises(StoreUnavailableError):
        await call_store(_slow, operation="load_catalog", timeout_ms=10)


@pytest.mark.asyncio
async def test_call_store_passes_through_results_and_business_errors() -> None:
    async def _ok() -> int:
        return 7

    async def _bad() -> int:
        raise ValueError("not a store problem")

    assert await call_store(_ok, operation="load_catalog") == 7
    with pytest.raises(ValueError):
        await call_store(_bad, operation="load_catalog")


def test_backoff_grows_with_attempts() -> None:
    policy = RetryPolicy(max_attempts=3, backoff_ms=100)
    # Jitter is bounded to [0.5, 1.5], so attempt 3 always exceeds attempt 1.
    assert backoff_seconds(policy, 3) > backoff_seconds(policy, 1)
