"""Map verified identity tokens to internal user ids.

Token subjects are not consistent across issuers: some carry the internal
numeric id, some a UUID, some an email address. Resolution runs an ordered
list of strategies and stops at the first one that yields a user id.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Mapping, Sequence
from uuid import UUID

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.ext.asyncio import AsyncSession

from registrycore.persistence.repos import users as users_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityToken:
    # Claims of a token already verified upstream; no signature handling happens here.
    subject: str
    email: str | None = None
    roles: tuple[str, ...] = ()
    token_id: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def cache_token_id(self) -> str:
        # Tokens without a jti fall back to the subject for cache scoping.
        return self.token_id or self.subject

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> IdentityToken:
        subject = claims.get("sub")
        if subject is None or str(subject).strip() == "":
            raise ValueError("Identity token missing subject")
        email = claims.get("email")
        jti = claims.get("jti")
        return cls(
            subject=str(subject).strip(),
            email=email if isinstance(email, str) else None,
            roles=tuple(_normalize_list_claim(claims.get("roles"))),
            token_id=str(jti) if jti else None,
            issued_at=_epoch_claim(claims.get("iat")),
            expires_at=_epoch_claim(claims.get("exp")),
            raw=dict(claims),
        )


def _normalize_list_claim(value: Any) -> list[str]:
    # Coerce claim values into a list of strings.
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return [str(value)]


def _epoch_claim(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def parse_internal_id(subject: str) -> str | None:
    # Numeric ids and UUIDs are internal ids; UUIDs are canonicalized to lowercase hyphenated form.
    candidate = subject.strip()
    # Only ASCII digits count; str.isdigit and int() both accept other Unicode digits.
    if not candidate.isascii():
        return None
    if candidate.isdigit():
        return str(int(candidate))
    try:
        return str(UUID(candidate))
    except ValueError:
        return None


def parse_email(value: str | None) -> str | None:
    if not value or "@" not in value:
        return None
    try:
        result = validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return None
    return result.normalized.lower()


IdentityStrategy = Callable[[AsyncSession, IdentityToken], Awaitable[str | None]]


async def subject_as_internal_id(session: AsyncSession, token: IdentityToken) -> str | None:
    return parse_internal_id(token.subject)


async def subject_as_email(session: AsyncSession, token: IdentityToken) -> str | None:
    email = parse_email(token.subject)
    if email is None:
        return None
    return await users_repo.find_active_user_id_by_email(session, email)


async def email_claim(session: AsyncSession, token: IdentityToken) -> str | None:
    email = parse_email(token.email)
    if email is None:
        return None
    return await users_repo.find_active_user_id_by_email(session, email)


DEFAULT_STRATEGIES: tuple[IdentityStrategy, ...] = (
    subject_as_internal_id,
    subject_as_email,
    email_claim,
)


@dataclass(frozen=True)
class IdentityResolution:
    user_id: str | None
    strategy: str | None

    @property
    def resolved(self) -> bool:
        return self.user_id is not None


class IdentityResolver:
    def __init__(self, strategies: Sequence[IdentityStrategy] | None = None) -> None:
        self._strategies = tuple(strategies or DEFAULT_STRATEGIES)

    async def resolve(self, session: AsyncSession, token: IdentityToken) -> IdentityResolution:
        # First strategy with an answer wins; store errors propagate to the caller.
        for strategy in self._strategies:
            user_id = await strategy(session, token)
            if user_id is not None:
                return IdentityResolution(user_id=user_id, strategy=strategy.__name__)
        logger.info("identity_unresolved subject_kind=%s", _subject_kind(token.subject))
        return IdentityResolution(user_id=None, strategy=None)


def _subject_kind(subject: str) -> str:
    # Log the shape of an unresolvable subject without logging the subject itself.
    if "@" in subject:
        return "email_like"
    if subject.isdigit():
        return "numeric"
    return "opaque"
