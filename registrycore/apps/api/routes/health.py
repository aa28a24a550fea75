from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from registrycore.apps.api.response import SuccessEnvelope, success_response
from registrycore.persistence.db import pool_stats

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; pool counters help spot exhaustion without a DB round-trip.
    payload = HealthResponse(status="ok", db_pool=pool_stats())
    return success_response(request=request, data=payload)
