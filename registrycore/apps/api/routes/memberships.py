from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.apps.api.deps import get_db, require_idempotency_key, require_permission
from registrycore.apps.api.idempotency import claim_or_replay, complete, release_on_failure
from registrycore.apps.api.response import SuccessEnvelope, success_response
from registrycore.domain.models import Membership, as_utc
from registrycore.domain.roles import PERMISSION_USERS_MANAGE, normalize_role, role_allows
from registrycore.persistence.repos import memberships as memberships_repo
from registrycore.persistence.repos import users as users_repo
from registrycore.services.authz.resolver import AuthorizationDecision
from registrycore.services.memberships import grant_membership, revoke_membership
from registrycore.services.resilience import call_store


router = APIRouter(prefix="/tenants/{tenant_id}/memberships", tags=["memberships"])


class MembershipGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)
    role: str
    expires_at: datetime | None = None

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        return normalize_role(value)


class MembershipResponse(BaseModel):
    id: str
    user_id: str
    tenant_id: str
    role: str
    status: str
    granted_by: str | None
    expires_at: str | None


def _to_response(row: Membership) -> MembershipResponse:
    expires_at = as_utc(row.expires_at)
    return MembershipResponse(
        id=row.id,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        role=row.role,
        status=row.status,
        granted_by=row.granted_by,
        expires_at=expires_at.isoformat() if expires_at is not None else None,
    )


@router.get("", response_model=SuccessEnvelope[list[MembershipResponse]])
async def list_memberships(
    tenant_id: str,
    request: Request,
    include_inactive: bool = False,
    _decision: AuthorizationDecision = Depends(require_permission(PERMISSION_USERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await call_store(
        lambda: memberships_repo.list_tenant_memberships(
            db, tenant_id=tenant_id, include_inactive=include_inactive
        ),
        operation="list_tenant_memberships",
    )
    return success_response(request=request, data=[_to_response(row).model_dump() for row in rows])


@router.post(
    "",
    response_model=SuccessEnvelope[MembershipResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_membership(
    tenant_id: str,
    request: Request,
    payload: MembershipGrantRequest,
    idempotency_key: str = Depends(require_idempotency_key),
    decision: AuthorizationDecision = Depends(require_permission(PERMISSION_USERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    # Coarse check: nobody hands out a role above their own in this tenant.
    if decision.role is not None and not role_allows(role=decision.role, minimum_role=payload.role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "ROLE_ESCALATION_FORBIDDEN",
                "message": f"Cannot grant {payload.role} above own role {decision.role}",
            },
        )
    # Re-granting an existing membership updates it in place and answers 200.
    replay = await claim_or_replay(
        db,
        tenant_id=tenant_id,
        key=idempotency_key,
        request_body=payload.model_dump(mode="json"),
    )
    if replay is not None:
        return replay
    async with release_on_failure(db, tenant_id=tenant_id, key=idempotency_key):
        user = await call_store(
            lambda: users_repo.get_user(db, payload.user_id), operation="get_user"
        )
        if user is None:
            await complete(db, tenant_id=tenant_id, key=idempotency_key, response_code=404)
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "USER_NOT_FOUND", "message": "User not found"},
            )

        row, created = await grant_membership(
            db,
            user_id=payload.user_id,
            tenant_id=tenant_id,
            role=payload.role,
            expires_at=payload.expires_at,
            actor_id=decision.user_id,
        )
        status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
        await complete(db, tenant_id=tenant_id, key=idempotency_key, response_code=status_code)
        return JSONResponse(
            content=success_response(request=request, data=_to_response(row)),
            status_code=status_code,
        )


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_membership(
    tenant_id: str,
    user_id: str,
    idempotency_key: str = Depends(require_idempotency_key),
    decision: AuthorizationDecision = Depends(require_permission(PERMISSION_USERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Revocation keeps the row and flips its status; repeated deletes are harmless.
    replay = await claim_or_replay(
        db, tenant_id=tenant_id, key=idempotency_key, request_body={"user_id": user_id, "revoke": True}
    )
    if replay is not None:
        return replay
    async with release_on_failure(db, tenant_id=tenant_id, key=idempotency_key):
        row = await revoke_membership(
            db, user_id=user_id, tenant_id=tenant_id, actor_id=decision.user_id
        )
        if row is None:
            await complete(db, tenant_id=tenant_id, key=idempotency_key, response_code=404)
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "MEMBERSHIP_NOT_FOUND", "message": "Membership not found"},
            )
        await complete(
            db, tenant_id=tenant_id, key=idempotency_key, response_code=status.HTTP_204_NO_CONTENT
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
