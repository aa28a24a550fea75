from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from registrycore.domain.roles import STATUS_ACTIVE


# SQLite only autoincrements INTEGER primary keys; Postgres gets BIGINT identity.
_BigIntId = BigInteger().with_variant(Integer(), "sqlite")
_Json = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Email lookups back token subjects that are not internal ids.
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(200))
    # Inactive users never resolve from a token.
    status: Mapped[str] = mapped_column(String(20), default=STATUS_ACTIVE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", name="uq_memberships_user_tenant"),
        Index("ix_memberships_tenant_role", "tenant_id", "role"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    role: Mapped[str] = mapped_column(String(50))
    # Revocation flips status; rows stay for audit references.
    status: Mapped[str] = mapped_column(String(20), default=STATUS_ACTIVE, nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class PermissionDefinition(Base):
    __tablename__ = "permissions"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"

    # Global role grants; one row per (role, permission).
    role: Mapped[str] = mapped_column(String(50), primary_key=True)
    permission_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TenantRolePermission(Base):
    __tablename__ = "tenant_role_permissions"
    __table_args__ = (
        Index("ix_tenant_role_permissions_tenant_role", "tenant_id", "role"),
    )

    # A present row is final for its triple: granted=False revokes, granted=True grants.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    role: Mapped[str] = mapped_column(String(50), primary_key=True)
    permission_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        # Two appenders that read the same head cannot both claim the next slot.
        UniqueConstraint("chain_key", "chain_seq", name="uq_audit_log_entries_chain_slot"),
        Index("ix_audit_log_entries_tenant_id_id", "tenant_id", "id"),
        Index("ix_audit_log_entries_entity", "entity_type", "entity_id"),
    )

    # Monotonic id doubles as the pagination cursor.
    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    # Null tenant_id marks global (tenant-less) actions.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50))
    entity_type: Mapped[str] = mapped_column(String(100))
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    before_json: Mapped[dict[str, Any] | None] = mapped_column(_Json, nullable=True)
    after_json: Mapped[dict[str, Any] | None] = mapped_column(_Json, nullable=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Lineage key and position; null chain_seq means the entry was written unchained.
    chain_key: Mapped[str] = mapped_column(String)
    chain_seq: Mapped[int | None] = mapped_column(_BigIntId, nullable=True)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "idem_key", name="uq_idempotency_records_tenant_key"),
        Index("ix_idempotency_records_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    idem_key: Mapped[str] = mapped_column(String(255))
    # Payload fingerprint; reuse with a different body is detectable but not fatal.
    request_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Null until the original request completes.
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
