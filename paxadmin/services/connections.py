from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

from paxadmin.core.errors import ForbiddenError, NotFoundError, NotProvisionedError
from paxadmin.domain.models import OPERATIONAL_STATUSES, Tenant
from paxadmin.persistence.repos.tenants import TenantRepository
from paxadmin.services.crypto.credentials import decrypt_secret


DEFAULT_DATABASE_PORT = 5432


@dataclass(frozen=True)
class ConnectionInfo:
    connection_string: str


def compose_connection_string(
    *, user: str | None, password: str, host: str | None, port: int | None, database: str | None
) -> str:
    # Escape the password fully; generated passwords contain URL-reserved symbols.
    escaped = quote(password, safe="")
    resolved_port = int(port or 0) or DEFAULT_DATABASE_PORT
    return f"postgresql://{user}:{escaped}@{host}:{resolved_port}/{database}"


def build_connection_string(tenant: Tenant) -> str:
    return compose_connection_string(
        user=tenant.database_user,
        password=decrypt_secret(tenant.database_pass or ""),
        host=tenant.database_host,
        port=tenant.database_port,
        database=tenant.database_name,
    )


def ensure_provisioned(tenant: Tenant) -> None:
    if not tenant.is_provisioned:
        raise NotProvisionedError(f"Tenant {tenant.code} has not been provisioned yet")


def ensure_module_access(tenant: Tenant, module_code: str) -> None:
    # Forbidden, not NotFound: the tenant exists but this module may not act on it.
    if tenant.status not in OPERATIONAL_STATUSES:
        raise ForbiddenError(f"Tenant {tenant.code} is not active")
    enabled = any(
        tenant_module.module.code == module_code and tenant_module.is_enabled
        for tenant_module in tenant.modules
    )
    if not enabled:
        raise ForbiddenError(f"Module {module_code} is not enabled for tenant {tenant.code}")


async def resolve_connection(
    repo: TenantRepository,
    tenant_ref: str,
    module_code: str | None = None,
) -> ConnectionInfo:
    """Return a ready-to-use connection string for a tenant database.

    ``tenant_ref`` may be the tenant id or its code. When ``module_code`` is
    given the call also asserts that the module may act on this tenant's
    database: the tenant must be ACTIVE or TRIAL and the module enabled.
    """
    tenant = await repo.get_by_id_or_code(tenant_ref)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    ensure_provisioned(tenant)
    if module_code:
        ensure_module_access(tenant, module_code)
    return ConnectionInfo(connection_string=build_connection_string(tenant))
