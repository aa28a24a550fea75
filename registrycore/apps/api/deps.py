from __future__ import annotations

import logging
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.persistence.db import get_session
from registrycore.services.access import authorize
from registrycore.services.auth.identity import IdentityToken
from registrycore.services.authz.resolver import AuthorizationDecision
from registrycore.services.idempotency import IDEMPOTENCY_HEADER


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated callers lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def get_identity_token(request: Request) -> IdentityToken:
    # Token verification happens upstream; it leaves either a token or raw claims on request.state.
    token = getattr(request.state, "identity_token", None)
    if isinstance(token, IdentityToken):
        return token
    claims = getattr(request.state, "identity_claims", None)
    if claims:
        try:
            return IdentityToken.from_claims(claims)
        except ValueError as exc:
            raise _auth_error(str(exc)) from exc
    raise _auth_error("Missing identity token")


def require_permission(permission_key: str) -> Callable[..., Awaitable[AuthorizationDecision]]:
    # Enforce a permission in the tenant named by the path.
    async def _dependency(
        tenant_id: str,
        token: IdentityToken = Depends(get_identity_token),
        db: AsyncSession = Depends(get_db),
    ) -> AuthorizationDecision:
        decision = await authorize(db, tenant_id=tenant_id, permission_key=permission_key, token=token)
        if not decision.allowed:
            logger.info(
                "request_forbidden tenant_id=%s permission=%s reason=%s",
                tenant_id,
                permission_key,
                decision.reason,
            )
            raise _forbidden_error(f"Missing permission {permission_key}")
        return decision

    return _dependency


def require_idempotency_key(
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> str:
    # Mutating endpoints refuse to run without a key so retries cannot double-apply.
    if idempotency_key is None or not idempotency_key.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "IDEMPOTENCY_KEY_REQUIRED",
                "message": f"{IDEMPOTENCY_HEADER} header is required",
            },
        )
    return idempotency_key
