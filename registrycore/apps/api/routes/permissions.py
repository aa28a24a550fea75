from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.apps.api.deps import get_db, require_idempotency_key, require_permission
from registrycore.apps.api.idempotency import claim_or_replay, complete, release_on_failure
from registrycore.apps.api.response import SuccessEnvelope, success_response
from registrycore.domain.models import TenantRolePermission
from registrycore.domain.roles import PERMISSION_PERMISSIONS_GRANT, normalize_role
from registrycore.persistence.repos import catalog as catalog_repo
from registrycore.services.authz.catalog import (
    clear_tenant_role_permission,
    set_tenant_role_permission,
)
from registrycore.services.authz.resolver import AuthorizationDecision
from registrycore.services.resilience import call_store


router = APIRouter(prefix="/tenants/{tenant_id}/permission-overrides", tags=["permissions"])


class OverrideRequest(BaseModel):
    granted: bool


class OverrideResponse(BaseModel):
    tenant_id: str
    role: str
    permission_key: str
    granted: bool


def _to_response(row: TenantRolePermission) -> OverrideResponse:
    return OverrideResponse(
        tenant_id=row.tenant_id,
        role=row.role,
        permission_key=row.permission_key,
        granted=bool(row.granted),
    )


def _parse_role(role: str) -> str:
    try:
        return normalize_role(role)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "ROLE_INVALID", "message": str(exc)},
        ) from exc


async def _ensure_known_permission(db: AsyncSession, permission_key: str) -> None:
    definition = await call_store(
        lambda: catalog_repo.get_permission_definition(db, permission_key),
        operation="get_permission_definition",
    )
    if definition is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PERMISSION_NOT_FOUND", "message": f"Unknown permission {permission_key}"},
        )


@router.get("", response_model=SuccessEnvelope[list[OverrideResponse]])
async def list_overrides(
    tenant_id: str,
    request: Request,
    role: str | None = None,
    _decision: AuthorizationDecision = Depends(require_permission(PERMISSION_PERMISSIONS_GRANT)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await call_store(
        lambda: catalog_repo.list_tenant_role_permissions(
            db, tenant_id=tenant_id, role=_parse_role(role) if role else None
        ),
        operation="list_tenant_role_permissions",
    )
    return success_response(request=request, data=[_to_response(row).model_dump() for row in rows])


@router.put("/{role}/{permission_key}", response_model=SuccessEnvelope[OverrideResponse])
async def put_override(
    tenant_id: str,
    role: str,
    permission_key: str,
    request: Request,
    payload: OverrideRequest,
    idempotency_key: str = Depends(require_idempotency_key),
    decision: AuthorizationDecision = Depends(require_permission(PERMISSION_PERMISSIONS_GRANT)),
    db: AsyncSession = Depends(get_db),
):
    role = _parse_role(role)
    await _ensure_known_permission(db, permission_key)
    replay = await claim_or_replay(
        db,
        tenant_id=tenant_id,
        key=idempotency_key,
        request_body={"role": role, "permission_key": permission_key, "granted": payload.granted},
    )
    if replay is not None:
        return replay
    async with release_on_failure(db, tenant_id=tenant_id, key=idempotency_key):
        row = await set_tenant_role_permission(
            db,
            tenant_id=tenant_id,
            role=role,
            permission_key=permission_key,
            granted=payload.granted,
            actor_id=decision.user_id,
        )
        await complete(db, tenant_id=tenant_id, key=idempotency_key, response_code=status.HTTP_200_OK)
        return success_response(request=request, data=_to_response(row))


@router.delete("/{role}/{permission_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_override(
    tenant_id: str,
    role: str,
    permission_key: str,
    idempotency_key: str = Depends(require_idempotency_key),
    decision: AuthorizationDecision = Depends(require_permission(PERMISSION_PERMISSIONS_GRANT)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Clearing hands the decision back to the global role table.
    role = _parse_role(role)
    replay = await claim_or_replay(
        db,
        tenant_id=tenant_id,
        key=idempotency_key,
        request_body={"role": role, "permission_key": permission_key, "clear": True},
    )
    if replay is not None:
        return replay
    async with release_on_failure(db, tenant_id=tenant_id, key=idempotency_key):
        await clear_tenant_role_permission(
            db,
            tenant_id=tenant_id,
            role=role,
            permission_key=permission_key,
            actor_id=decision.user_id,
        )
        await complete(
            db, tenant_id=tenant_id, key=idempotency_key, response_code=status.HTTP_204_NO_CONTENT
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
