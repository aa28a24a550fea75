from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.apps.api.deps import get_db, require_permission
from registrycore.apps.api.response import SuccessEnvelope, success_response
from registrycore.domain.models import AuditLogEntry, as_utc
from registrycore.domain.roles import PERMISSION_AUDIT_VIEW
from registrycore.services.audit import ChainVerificationReport, get_audit_chain, list_entries_page
from registrycore.services.authz.resolver import AuthorizationDecision


router = APIRouter(prefix="/tenants/{tenant_id}/audit", tags=["audit"])


class AuditEntryResponse(BaseModel):
    id: int
    tenant_id: str | None
    actor_id: str | None
    action: str
    entity_type: str
    entity_id: str | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    ts: str
    hash: str | None
    prev_hash: str | None
    chain_seq: int | None


class AuditEntriesPage(BaseModel):
    items: list[AuditEntryResponse]
    next_cursor: int | None
    has_more: bool


class IntegrityViolationResponse(BaseModel):
    entry_id: int
    chain_seq: int | None
    reason: str


class ChainVerificationResponse(BaseModel):
    tenant_id: str | None
    ok: bool
    checked: int
    unchained: int
    head_hash: str | None
    violations: list[IntegrityViolationResponse]


def _to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        tenant_id=entry.tenant_id,
        actor_id=entry.actor_id,
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        before=entry.before_json,
        after=entry.after_json,
        ts=as_utc(entry.ts).isoformat(),
        hash=entry.hash,
        prev_hash=entry.prev_hash,
        chain_seq=entry.chain_seq,
    )


def _report_response(report: ChainVerificationReport) -> ChainVerificationResponse:
    return ChainVerificationResponse(
        tenant_id=report.tenant_id,
        ok=report.ok,
        checked=report.checked,
        unchained=report.unchained,
        head_hash=report.head_hash,
        violations=[
            IntegrityViolationResponse(
                entry_id=violation.entry_id,
                chain_seq=violation.chain_seq,
                reason=violation.reason,
            )
            for violation in report.violations
        ],
    )


@router.get("/entries", response_model=SuccessEnvelope[AuditEntriesPage])
async def list_audit_entries(
    tenant_id: str,
    request: Request,
    actor_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ts_from: datetime | None = Query(default=None, alias="from"),
    ts_to: datetime | None = Query(default=None, alias="to"),
    cursor: int | None = Query(default=None, ge=0),
    limit: int = Query(default=20, ge=1, le=200),
    _decision: AuthorizationDecision = Depends(require_permission(PERMISSION_AUDIT_VIEW)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page = await list_entries_page(
        db,
        tenant_id=tenant_id,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        ts_from=ts_from,
        ts_to=ts_to,
        cursor=cursor,
        limit=limit,
    )
    payload = AuditEntriesPage(
        items=[_to_response(entry) for entry in page.items],
        next_cursor=page.next_cursor,
        has_more=page.has_more,
    )
    return success_response(request=request, data=payload)


@router.get("/verify", response_model=SuccessEnvelope[ChainVerificationResponse])
async def verify_audit_chain(
    tenant_id: str,
    request: Request,
    _decision: AuthorizationDecision = Depends(require_permission(PERMISSION_AUDIT_VIEW)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Read-only check; broken links are reported in the body, not as an error status.
    report = await get_audit_chain().verify(db, tenant_id=tenant_id)
    return success_response(request=request, data=_report_response(report))
