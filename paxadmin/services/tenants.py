from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from paxadmin.core.errors import ConflictError, NotFoundError, ValidationError
from paxadmin.domain.models import Module, Tenant, TenantContact, TenantModule, TenantStatus
from paxadmin.persistence.repos.modules import ModuleRepository, PlanRepository
from paxadmin.persistence.repos.tenants import TenantFilters, TenantRepository
from paxadmin.services.database_server import SERVER_ERRORS, DatabaseServer, get_database_server
from paxadmin.services.provisioning import drop_tenant_database, validate_tenant_code


logger = logging.getLogger(__name__)

# Profile fields an operator may edit after creation.
EDITABLE_FIELDS = frozenset({"name", "trade_name", "email", "phone", "notes", "status"})


@dataclass(frozen=True)
class TenantCreate:
    code: str
    name: str
    document: str
    email: str | None = None
    trade_name: str | None = None
    phone: str | None = None
    notes: str | None = None
    # Either a plan used as a template or an explicit module selection, never both.
    plan_id: str | None = None
    module_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TenantContactCreate:
    name: str
    email: str
    phone: str | None = None
    role: str | None = None
    is_primary: bool = False


@dataclass(frozen=True)
class ModuleToggleResult:
    tenant_module: TenantModule
    # Passed alongside: a freshly inserted association has no loaded module yet.
    module: Module
    needs_migration: bool
    warning: str | None


@dataclass(frozen=True)
class ModuleSetResult:
    tenant: Tenant
    pending_migrations_count: int
    warning: str | None


@dataclass(frozen=True)
class TenantDeleteResult:
    success: bool
    message: str
    was_provisioned: bool
    database_dropped: bool
    user_dropped: bool
    database_name: str | None
    database_user: str | None
    drop_error: str | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_status(status: str) -> str:
    try:
        return TenantStatus(status).value
    except ValueError as exc:
        allowed = ", ".join(member.value for member in TenantStatus)
        raise ValidationError(f"Unknown tenant status {status!r}; expected one of {allowed}") from exc


async def _core_module_ids(modules: ModuleRepository) -> list[str]:
    return [module.id for module in await modules.list_core()]


def _merge_ids(*groups: list[str]) -> list[str]:
    # Order-preserving union.
    merged: list[str] = []
    for group in groups:
        for module_id in group:
            if module_id not in merged:
                merged.append(module_id)
    return merged


def _next_position(tenant: Tenant) -> int:
    return max((tm.position for tm in tenant.modules), default=-1) + 1


async def get_tenant(tenants: TenantRepository, tenant_id: str) -> Tenant:
    tenant = await tenants.get(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    return tenant


async def create_tenant(
    tenants: TenantRepository,
    modules: ModuleRepository,
    plans: PlanRepository,
    data: TenantCreate,
) -> Tenant:
    """Register a tenant in PENDING state with its initial module set.

    The set comes from the plan template or the explicit ``module_ids`` and is
    always extended with every active core module.
    """
    validate_tenant_code(data.code)
    existing = await tenants.find_by_code_or_document(data.code, data.document)
    if existing is not None:
        if existing.code == data.code:
            raise ConflictError("Tenant code is already in use")
        raise ConflictError("Tenant document is already registered")
    if data.plan_id and data.module_ids:
        raise ValidationError("Provide plan_id or module_ids, not both")

    selected: list[str] = []
    if data.plan_id:
        plan_module_ids = await plans.get_module_ids(data.plan_id)
        if plan_module_ids is None:
            raise NotFoundError("Plan not found")
        selected = plan_module_ids
    elif data.module_ids:
        requested = _merge_ids(data.module_ids)
        found = await modules.get_many(requested)
        if len(found) != len(requested):
            raise ValidationError("One or more modules were not found")
        selected = requested

    module_ids = _merge_ids(await _core_module_ids(modules), selected)
    tenant = Tenant(
        code=data.code,
        name=data.name,
        document=data.document,
        email=data.email,
        trade_name=data.trade_name,
        phone=data.phone,
        notes=data.notes,
        status=TenantStatus.PENDING.value,
        is_provisioned=False,
    )
    tenant = await tenants.add(tenant)
    tenant = await tenants.replace_modules(tenant, module_ids)
    await tenants.commit()
    logger.info("tenant_created tenant=%s modules=%s", tenant.code, len(module_ids))
    return tenant


async def list_tenants(tenants: TenantRepository, filters: TenantFilters | None = None) -> list[Tenant]:
    filters = filters or TenantFilters()
    if filters.status:
        filters = TenantFilters(status=_normalize_status(filters.status), search=filters.search)
    return await tenants.list(filters)


async def update_tenant(tenants: TenantRepository, tenant_id: str, **fields: Any) -> Tenant:
    tenant = await get_tenant(tenants, tenant_id)
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    if fields.get("status") is not None:
        fields["status"] = _normalize_status(fields["status"])
    changes = {key: value for key, value in fields.items() if value is not None}
    if changes:
        await tenants.update_fields(tenant, **changes)
        await tenants.commit()
    return tenant


async def update_status(tenants: TenantRepository, tenant_id: str, status: str) -> Tenant:
    tenant = await get_tenant(tenants, tenant_id)
    await tenants.update_fields(tenant, status=_normalize_status(status))
    await tenants.commit()
    logger.info("tenant_status_changed tenant=%s status=%s", tenant.code, tenant.status)
    return tenant


async def get_statistics(tenants: TenantRepository) -> dict[str, int]:
    counts = await tenants.count_by_status()
    return {
        "total": sum(counts.values()),
        "active": counts.get(TenantStatus.ACTIVE.value, 0),
        "trial": counts.get(TenantStatus.TRIAL.value, 0),
        "suspended": counts.get(TenantStatus.SUSPENDED.value, 0),
    }


async def enable_module(
    tenants: TenantRepository,
    modules: ModuleRepository,
    tenant_id: str,
    module_id: str,
) -> ModuleToggleResult:
    tenant = await get_tenant(tenants, tenant_id)
    module = await modules.get(module_id)
    if module is None:
        raise NotFoundError("Module not found")

    tenant_module = await tenants.get_tenant_module(tenant.id, module.id)
    if tenant_module is None:
        tenant_module = await tenants.add_tenant_module(
            TenantModule(
                tenant_id=tenant.id,
                module_id=module.id,
                is_enabled=True,
                migrations_applied=False,
                position=_next_position(tenant),
            )
        )
    else:
        tenant_module = await tenants.update_tenant_module(tenant_module, is_enabled=True, disabled_at=None)
    await tenants.commit()

    needs_migration = bool(tenant.is_provisioned and not tenant_module.migrations_applied)
    warning = None
    if needs_migration:
        warning = (
            "Module enabled on a provisioned tenant; apply its migrations with "
            f"POST /migrations/tenant/{tenant.id}/module/{module.id}/apply "
            f"or POST /migrations/tenant/{tenant.id}/apply-pending"
        )
    logger.info("tenant_module_enabled tenant=%s module=%s", tenant.code, module.code)
    return ModuleToggleResult(
        tenant_module=tenant_module, module=module, needs_migration=needs_migration, warning=warning
    )


async def disable_module(tenants: TenantRepository, tenant_id: str, module_id: str) -> TenantModule:
    tenant = await get_tenant(tenants, tenant_id)
    tenant_module = await tenants.get_tenant_module(tenant.id, module_id)
    if tenant_module is None:
        raise NotFoundError("Module is not associated with this tenant")
    tenant_module = await tenants.update_tenant_module(tenant_module, is_enabled=False, disabled_at=_utc_now())
    await tenants.commit()
    logger.info("tenant_module_disabled tenant=%s module_id=%s", tenant.code, module_id)
    return tenant_module


async def set_modules(
    tenants: TenantRepository,
    modules: ModuleRepository,
    tenant_id: str,
    module_ids: list[str],
) -> ModuleSetResult:
    tenant = await get_tenant(tenants, tenant_id)
    all_ids = _merge_ids(await _core_module_ids(modules), module_ids)
    found = await modules.get_many(all_ids)
    if len(found) != len(all_ids):
        raise NotFoundError("One or more modules were not found")

    tenant = await tenants.replace_modules(tenant, all_ids)
    await tenants.commit()

    pending = 0
    warning = None
    if tenant.is_provisioned:
        pending = sum(1 for tm in tenant.modules if not tm.migrations_applied)
        if pending:
            warning = (
                f"{pending} module(s) need migrations; run POST /migrations/tenant/{tenant.id}/apply-pending"
            )
    logger.info("tenant_modules_replaced tenant=%s modules=%s pending=%s", tenant.code, len(all_ids), pending)
    return ModuleSetResult(tenant=tenant, pending_migrations_count=pending, warning=warning)


def _delete_message(
    tenant: Tenant,
    *,
    was_provisioned: bool,
    database_dropped: bool,
    user_dropped: bool,
    drop_error: str | None,
) -> str:
    if not was_provisioned:
        return "Tenant deleted"
    if drop_error:
        return (
            f"Tenant deleted, but removing its database failed: {drop_error}. "
            f"Database '{tenant.database_name}' and role '{tenant.database_user}' may need manual removal."
        )
    if database_dropped and user_dropped:
        return f"Tenant deleted. Database '{tenant.database_name}' and role '{tenant.database_user}' were removed."
    return "Tenant deleted"


async def delete_tenant(
    tenants: TenantRepository,
    tenant_id: str,
    drop_database: bool = True,
    *,
    server: DatabaseServer | None = None,
) -> TenantDeleteResult:
    """Delete the tenant record and, best-effort, its database and role.

    Drop failures are reported in the result; the record is deleted regardless.
    """
    tenant = await get_tenant(tenants, tenant_id)
    was_provisioned = tenant.is_provisioned
    database_dropped = False
    user_dropped = False
    drop_error: str | None = None

    if was_provisioned and drop_database and tenant.database_name and tenant.database_user:
        try:
            outcome = await drop_tenant_database(tenant, server=server or get_database_server())
            database_dropped = outcome.database_dropped
            user_dropped = outcome.user_dropped
        except SERVER_ERRORS as exc:
            drop_error = str(exc)
            logger.warning("tenant_database_drop_failed tenant=%s", tenant.code, exc_info=exc)

    message = _delete_message(
        tenant,
        was_provisioned=was_provisioned,
        database_dropped=database_dropped,
        user_dropped=user_dropped,
        drop_error=drop_error,
    )
    database_name, database_user = tenant.database_name, tenant.database_user
    await tenants.delete(tenant)
    await tenants.commit()
    logger.info(
        "tenant_deleted tenant=%s database_dropped=%s user_dropped=%s",
        tenant.code,
        database_dropped,
        user_dropped,
    )
    return TenantDeleteResult(
        success=True,
        message=message,
        was_provisioned=was_provisioned,
        database_dropped=database_dropped,
        user_dropped=user_dropped,
        database_name=database_name,
        database_user=database_user,
        drop_error=drop_error,
    )


async def add_contact(tenants: TenantRepository, tenant_id: str, data: TenantContactCreate) -> TenantContact:
    tenant = await get_tenant(tenants, tenant_id)
    contact = await tenants.add_contact(
        TenantContact(
            tenant_id=tenant.id,
            name=data.name,
            email=data.email,
            phone=data.phone,
            role=data.role,
            is_primary=data.is_primary,
        )
    )
    await tenants.commit()
    logger.info("tenant_contact_added tenant=%s primary=%s", tenant.code, contact.is_primary)
    return contact


async def list_contacts(tenants: TenantRepository, tenant_id: str) -> list[TenantContact]:
    tenant = await get_tenant(tenants, tenant_id)
    return await tenants.list_contacts(tenant.id)
