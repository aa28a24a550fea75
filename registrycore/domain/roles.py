from __future__ import annotations


ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_PARISH_ADMIN = "PARISH_ADMIN"
ROLE_REGISTRAR = "REGISTRAR"
ROLE_PRIEST = "PRIEST"
ROLE_VIEWER = "VIEWER"

ROLE_ORDER: dict[str, int] = {
    ROLE_SUPER_ADMIN: 100,
    ROLE_PARISH_ADMIN: 80,
    ROLE_REGISTRAR: 60,
    ROLE_PRIEST: 40,
    ROLE_VIEWER: 20,
}

STATUS_ACTIVE = "ACTIVE"
STATUS_INACTIVE = "INACTIVE"
STATUSES = {STATUS_ACTIVE, STATUS_INACTIVE}

PERMISSION_USERS_MANAGE = "users.manage"
PERMISSION_USERS_VIEW = "users.view"
PERMISSION_PERMISSIONS_GRANT = "permissions.grant"
PERMISSION_SACRAMENTS_CREATE = "sacraments.create"
PERMISSION_SACRAMENTS_UPDATE = "sacraments.update"
PERMISSION_SACRAMENTS_VIEW = "sacraments.view"
PERMISSION_SETTINGS_EDIT = "settings.edit"
PERMISSION_AUDIT_VIEW = "audit.view"

DEFAULT_PERMISSIONS: tuple[str, ...] = (
    PERMISSION_USERS_MANAGE,
    PERMISSION_USERS_VIEW,
    PERMISSION_PERMISSIONS_GRANT,
    PERMISSION_SACRAMENTS_CREATE,
    PERMISSION_SACRAMENTS_UPDATE,
    PERMISSION_SACRAMENTS_VIEW,
    PERMISSION_SETTINGS_EDIT,
    PERMISSION_AUDIT_VIEW,
)

DEFAULT_ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_SUPER_ADMIN: frozenset(DEFAULT_PERMISSIONS),
    ROLE_PARISH_ADMIN: frozenset(DEFAULT_PERMISSIONS),
    ROLE_REGISTRAR: frozenset(
        {PERMISSION_SACRAMENTS_CREATE, PERMISSION_SACRAMENTS_UPDATE, PERMISSION_SACRAMENTS_VIEW}
    ),
    ROLE_PRIEST: frozenset({PERMISSION_SACRAMENTS_CREATE, PERMISSION_SACRAMENTS_VIEW}),
    ROLE_VIEWER: frozenset({PERMISSION_SACRAMENTS_VIEW, PERMISSION_USERS_VIEW}),
}


def normalize_role(role: str) -> str:
    # Accept claim spellings like "parish-admin" while keeping one stored vocabulary.
    normalized = role.strip().upper().replace("-", "_")
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for coarse privilege checks.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def normalize_status(status: str) -> str:
    normalized = status.strip().upper()
    if normalized not in STATUSES:
        raise ValueError(f"Unsupported membership status: {status}")
    return normalized
