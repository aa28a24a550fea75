from __future__ import annotations

from registrycore.core.config import get_settings
from registrycore.core.errors import RegistryError


GLOBAL_CHAIN_KEY = "global"


class TenantPredicateError(RegistryError):
    # Surface missing tenant predicates when guard enforcement is enabled.
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def require_tenant_id(tenant_id: str | None) -> None:
    # Refuse tenant-scoped reads and writes that lost their tenant id on the way in.
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def lineage_predicate(model, tenant_id: str | None) -> object:
    # Audit lineages are either one tenant or the tenant-less global chain, never both.
    if tenant_id is None:
        return model.tenant_id.is_(None)
    return tenant_predicate(model, tenant_id)


def chain_key_for(tenant_id: str | None) -> str:
    return GLOBAL_CHAIN_KEY if tenant_id is None else f"tenant:{tenant_id}"
