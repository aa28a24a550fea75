from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.domain.models import AppUser
from registrycore.domain.roles import STATUS_ACTIVE


async def get_user(session: AsyncSession, user_id: str) -> AppUser | None:
    result = await session.execute(select(AppUser).where(AppUser.id == user_id))
    return result.scalar_one_or_none()


async def find_active_user_id_by_email(session: AsyncSession, email: str) -> str | None:
    # Emails compare case-insensitively; inactive users never resolve.
    result = await session.execute(
        select(AppUser.id).where(
            func.lower(AppUser.email) == email.strip().lower(),
            AppUser.status == STATUS_ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def add_user(
    session: AsyncSession,
    *,
    user_id: str,
    email: str,
    full_name: str,
    status: str = STATUS_ACTIVE,
) -> AppUser:
    user = AppUser(id=user_id, email=email.strip().lower(), full_name=full_name, status=status)
    session.add(user)
    await session.flush()
    return user
