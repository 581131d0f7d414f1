from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

from paxadmin.core.config import get_settings
from paxadmin.core.errors import (
    ConfigurationError,
    ConflictError,
    CredentialsError,
    ExternalOperationError,
    NotFoundError,
    ValidationError,
)
from paxadmin.domain.models import Tenant
from paxadmin.persistence.repos.tenants import TenantRepository
from paxadmin.services.connections import build_connection_string, compose_connection_string
from paxadmin.services.crypto.credentials import encrypt_secret
from paxadmin.services.database_server import SERVER_ERRORS, DatabaseServer, get_database_server


logger = logging.getLogger(__name__)

# Database and role names are interpolated into DDL, so the code must be a safe identifier.
TENANT_CODE_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,62}$")
PASSWORD_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%"
PASSWORD_LENGTH = 24


@dataclass(frozen=True)
class ProvisionResult:
    host: str
    port: int
    database_name: str
    database_user: str
    # Only plaintext exposure of the generated password.
    connection_string: str
    message: str


@dataclass(frozen=True)
class DropOutcome:
    database_dropped: bool
    user_dropped: bool


@dataclass(frozen=True)
class DeprovisionResult:
    success: bool
    database_dropped: bool
    user_dropped: bool
    message: str


@dataclass(frozen=True)
class HealthResult:
    healthy: bool
    message: str
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_tenant_code(code: str | None) -> None:
    if not code or not TENANT_CODE_PATTERN.fullmatch(code):
        raise ValidationError(
            "Tenant code must be 1-63 characters of letters, digits and hyphens, starting with a letter or digit"
        )


def database_names_for(code: str) -> tuple[str, str]:
    # Hyphens are legal in codes but not in unquoted identifiers.
    slug = code.replace("-", "_")
    return f"{slug}_erp", f"user_{slug}"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


async def _get_tenant(repo: TenantRepository, tenant_id: str) -> Tenant:
    tenant = await repo.get(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    return tenant


async def provision_tenant(
    repo: TenantRepository,
    tenant_id: str,
    *,
    server: DatabaseServer | None = None,
) -> ProvisionResult:
    """Create the tenant's login role and database and store its credentials.

    Every step is existence-checked so a run interrupted after creating the
    role or the database can simply be repeated. A role left behind by such a
    run gets the newly generated password so the stored credentials match.
    """
    tenant = await _get_tenant(repo, tenant_id)
    if tenant.is_provisioned:
        raise ConflictError("Tenant has already been provisioned")
    validate_tenant_code(tenant.code)

    settings = get_settings()
    server = server or get_database_server()
    database_name, database_user = database_names_for(tenant.code)
    password = generate_password()
    # Fail on a missing encryption key before touching the server.
    encrypted_password = encrypt_secret(password)
    host = settings.db_admin_host
    port = int(settings.db_admin_port)

    logger.info(
        "tenant_provisioning_started tenant=%s database=%s role=%s host=%s port=%s",
        tenant.code,
        database_name,
        database_user,
        host,
        port,
    )
    try:
        if await server.role_exists(database_user):
            await server.set_role_password(database_user, password)
        else:
            await server.create_role(database_user, password)
        if not await server.database_exists(database_name):
            await server.create_database(database_name, database_user)
        await server.grant_privileges(database_name, database_user)
    except SERVER_ERRORS as exc:
        logger.warning("tenant_provisioning_failed tenant=%s", tenant.code, exc_info=exc)
        raise ExternalOperationError("Provisioning", str(exc)) from exc

    await repo.update_fields(
        tenant,
        database_host=host,
        database_port=port,
        database_name=database_name,
        database_user=database_user,
        database_pass=encrypted_password,
        is_provisioned=True,
        provisioned_at=_utc_now(),
    )
    await repo.commit()
    logger.info("tenant_provisioned tenant=%s database=%s", tenant.code, database_name)
    return ProvisionResult(
        host=host,
        port=port,
        database_name=database_name,
        database_user=database_user,
        connection_string=compose_connection_string(
            user=database_user, password=password, host=host, port=port, database=database_name
        ),
        message="Database provisioned. Apply migrations next.",
    )


async def drop_tenant_database(tenant: Tenant, *, server: DatabaseServer) -> DropOutcome:
    # Irreversible; each object is existence-checked so a partial earlier drop is tolerated.
    database_name = tenant.database_name or ""
    database_user = tenant.database_user or ""
    database_dropped = False
    user_dropped = False
    await server.terminate_sessions(database_name)
    if await server.database_exists(database_name):
        await server.drop_database(database_name)
        database_dropped = True
    if await server.role_exists(database_user):
        await server.drop_role(database_user)
        user_dropped = True
    return DropOutcome(database_dropped=database_dropped, user_dropped=user_dropped)


async def deprovision_tenant(
    repo: TenantRepository,
    tenant_id: str,
    *,
    server: DatabaseServer | None = None,
) -> DeprovisionResult:
    tenant = await _get_tenant(repo, tenant_id)
    if not tenant.is_provisioned:
        return DeprovisionResult(
            success=True,
            database_dropped=False,
            user_dropped=False,
            message="Tenant was not provisioned",
        )
    if not tenant.database_name or not tenant.database_user:
        raise ValidationError("Tenant database credentials are incomplete")

    server = server or get_database_server()
    try:
        outcome = await drop_tenant_database(tenant, server=server)
    except SERVER_ERRORS as exc:
        logger.warning("tenant_deprovisioning_failed tenant=%s", tenant.code, exc_info=exc)
        raise ExternalOperationError("Deprovisioning", str(exc)) from exc

    database_name, database_user = tenant.database_name, tenant.database_user
    # Back to the unprovisioned state so the tenant can be provisioned again.
    await repo.update_fields(
        tenant,
        is_provisioned=False,
        provisioned_at=None,
        database_host=None,
        database_port=None,
        database_name=None,
        database_user=None,
        database_pass=None,
    )
    for tenant_module in tenant.modules:
        await repo.update_tenant_module(
            tenant_module,
            migrations_applied=False,
            migrations_applied_at=None,
            schema_version=None,
        )
    await repo.commit()
    logger.info(
        "tenant_deprovisioned tenant=%s database_dropped=%s user_dropped=%s",
        tenant.code,
        outcome.database_dropped,
        outcome.user_dropped,
    )
    return DeprovisionResult(
        success=True,
        database_dropped=outcome.database_dropped,
        user_dropped=outcome.user_dropped,
        message=f"Database '{database_name}' and role '{database_user}' removed",
    )


async def check_health(
    repo: TenantRepository,
    tenant_ref: str,
    *,
    server: DatabaseServer | None = None,
) -> HealthResult:
    tenant = await repo.get_by_id_or_code(tenant_ref)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    if not tenant.is_provisioned:
        return HealthResult(healthy=False, message="Tenant not provisioned")

    settings = get_settings()
    server = server or get_database_server()
    try:
        await server.ping(build_connection_string(tenant), timeout_s=float(settings.health_check_timeout_s))
    except (*SERVER_ERRORS, CredentialsError, ConfigurationError) as exc:
        logger.info("tenant_health_check_failed tenant=%s", tenant.code)
        return HealthResult(healthy=False, message="Connection failed", error=str(exc))
    return HealthResult(healthy=True, message="Connection OK")
