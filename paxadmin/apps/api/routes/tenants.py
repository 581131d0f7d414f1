from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from paxadmin.apps.api.deps import get_module_repo, get_plan_repo, get_server, get_tenant_repo, require_service_key
from paxadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from paxadmin.apps.api.response import SuccessEnvelope, success_response
from paxadmin.domain.models import Module, Tenant, TenantContact, TenantModule
from paxadmin.persistence.repos.modules import ModuleRepository, PlanRepository
from paxadmin.persistence.repos.tenants import TenantFilters, TenantRepository
from paxadmin.services import tenants as tenant_service
from paxadmin.services.database_server import DatabaseServer


router = APIRouter(
    prefix="/tenants",
    tags=["tenants"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_service_key)],
)


class TenantCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=63)
    name: str = Field(min_length=1)
    document: str = Field(min_length=1)
    email: str | None = None
    trade_name: str | None = None
    phone: str | None = None
    notes: str | None = None
    plan_id: str | None = None
    module_ids: list[str] = Field(default_factory=list)

    model_config = {"extra": "forbid"}


class TenantUpdateRequest(BaseModel):
    name: str | None = None
    trade_name: str | None = None
    email: str | None = None
    phone: str | None = None
    notes: str | None = None
    status: str | None = None

    # Credentials and provisioning state are owned by the provisioning endpoints.
    model_config = {"extra": "forbid"}


class TenantStatusRequest(BaseModel):
    status: str


class TenantModulesRequest(BaseModel):
    module_ids: list[str]


class TenantContactRequest(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str | None = None
    role: str | None = None
    is_primary: bool = False

    model_config = {"extra": "forbid"}


class TenantContactResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    email: str
    phone: str | None = None
    role: str | None = None
    is_primary: bool
    created_at: datetime | None = None


class TenantModuleResponse(BaseModel):
    id: str
    module_id: str
    module_code: str
    module_name: str
    is_enabled: bool
    disabled_at: datetime | None = None
    migrations_applied: bool
    migrations_applied_at: datetime | None = None
    schema_version: str | None = None


class TenantResponse(BaseModel):
    id: str
    code: str
    document: str
    name: str
    trade_name: str | None = None
    email: str | None = None
    phone: str | None = None
    notes: str | None = None
    status: str
    is_provisioned: bool
    provisioned_at: datetime | None = None
    database_host: str | None = None
    database_port: int | None = None
    database_name: str | None = None
    database_user: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    modules: list[TenantModuleResponse] = Field(default_factory=list)


class TenantStatisticsResponse(BaseModel):
    total: int
    active: int
    trial: int
    suspended: int


class ModuleEnableResponse(BaseModel):
    tenant_module: TenantModuleResponse
    needs_migration: bool
    warning: str | None = None


class TenantModulesResponse(BaseModel):
    tenant: TenantResponse
    pending_migrations_count: int
    warning: str | None = None


class TenantDeleteResponse(BaseModel):
    success: bool
    message: str
    was_provisioned: bool
    database_dropped: bool
    user_dropped: bool
    database_name: str | None = None
    database_user: str | None = None
    drop_error: str | None = None


def _tenant_module_response(tenant_module: TenantModule, module: Module) -> TenantModuleResponse:
    return TenantModuleResponse(
        id=tenant_module.id,
        module_id=tenant_module.module_id,
        module_code=module.code,
        module_name=module.name,
        is_enabled=tenant_module.is_enabled,
        disabled_at=tenant_module.disabled_at,
        migrations_applied=tenant_module.migrations_applied,
        migrations_applied_at=tenant_module.migrations_applied_at,
        schema_version=tenant_module.schema_version,
    )


def _contact_response(contact: TenantContact) -> TenantContactResponse:
    return TenantContactResponse(
        id=contact.id,
        tenant_id=contact.tenant_id,
        name=contact.name,
        email=contact.email,
        phone=contact.phone,
        role=contact.role,
        is_primary=contact.is_primary,
        created_at=contact.created_at,
    )


def _tenant_response(tenant: Tenant) -> TenantResponse:
    # The stored password never leaves the service, not even as ciphertext.
    return TenantResponse(
        id=tenant.id,
        code=tenant.code,
        document=tenant.document,
        name=tenant.name,
        trade_name=tenant.trade_name,
        email=tenant.email,
        phone=tenant.phone,
        notes=tenant.notes,
        status=tenant.status,
        is_provisioned=tenant.is_provisioned,
        provisioned_at=tenant.provisioned_at,
        database_host=tenant.database_host,
        database_port=tenant.database_port,
        database_name=tenant.database_name,
        database_user=tenant.database_user,
        created_at=tenant.created_at,
        updated_at=tenant.updated_at,
        modules=[_tenant_module_response(tm, tm.module) for tm in tenant.modules],
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def create_tenant(
    payload: TenantCreateRequest,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    modules: ModuleRepository = Depends(get_module_repo),
    plans: PlanRepository = Depends(get_plan_repo),
) -> dict:
    data = tenant_service.TenantCreate(**payload.model_dump())
    tenant = await tenant_service.create_tenant(tenants, modules, plans, data)
    return success_response(request=request, data=_tenant_response(tenant))


@router.get("", response_model=SuccessEnvelope[list[TenantResponse]] | list[TenantResponse])
async def list_tenants(
    request: Request,
    status: str | None = Query(default=None),
    search: str | None = Query(default=None),
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    items = await tenant_service.list_tenants(tenants, TenantFilters(status=status, search=search))
    return success_response(request=request, data=[_tenant_response(tenant) for tenant in items])


# Declared before /{tenant_id} so the literal path wins.
@router.get("/statistics", response_model=SuccessEnvelope[TenantStatisticsResponse] | TenantStatisticsResponse)
async def tenant_statistics(
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    stats = await tenant_service.get_statistics(tenants)
    return success_response(request=request, data=TenantStatisticsResponse(**stats))


@router.get("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def get_tenant(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    tenant = await tenant_service.get_tenant(tenants, tenant_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.patch("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def update_tenant(
    tenant_id: str,
    payload: TenantUpdateRequest,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    tenant = await tenant_service.update_tenant(tenants, tenant_id, **payload.model_dump(exclude_unset=True))
    return success_response(request=request, data=_tenant_response(tenant))


@router.patch("/{tenant_id}/status", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def update_tenant_status(
    tenant_id: str,
    payload: TenantStatusRequest,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    tenant = await tenant_service.update_status(tenants, tenant_id, payload.status)
    return success_response(request=request, data=_tenant_response(tenant))


@router.post(
    "/{tenant_id}/modules/{module_id}/enable",
    response_model=SuccessEnvelope[ModuleEnableResponse] | ModuleEnableResponse,
)
async def enable_module(
    tenant_id: str,
    module_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    result = await tenant_service.enable_module(tenants, modules, tenant_id, module_id)
    payload = ModuleEnableResponse(
        tenant_module=_tenant_module_response(result.tenant_module, result.module),
        needs_migration=result.needs_migration,
        warning=result.warning,
    )
    return success_response(request=request, data=payload)


@router.post(
    "/{tenant_id}/modules/{module_id}/disable",
    response_model=SuccessEnvelope[TenantModuleResponse] | TenantModuleResponse,
)
async def disable_module(
    tenant_id: str,
    module_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    tenant_module = await tenant_service.disable_module(tenants, tenant_id, module_id)
    return success_response(request=request, data=_tenant_module_response(tenant_module, tenant_module.module))


@router.put("/{tenant_id}/modules", response_model=SuccessEnvelope[TenantModulesResponse] | TenantModulesResponse)
async def set_modules(
    tenant_id: str,
    payload: TenantModulesRequest,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    result = await tenant_service.set_modules(tenants, modules, tenant_id, payload.module_ids)
    response = TenantModulesResponse(
        tenant=_tenant_response(result.tenant),
        pending_migrations_count=result.pending_migrations_count,
        warning=result.warning,
    )
    return success_response(request=request, data=response)


@router.delete("/{tenant_id}", response_model=SuccessEnvelope[TenantDeleteResponse] | TenantDeleteResponse)
async def delete_tenant(
    tenant_id: str,
    request: Request,
    drop_database: bool = Query(default=True),
    tenants: TenantRepository = Depends(get_tenant_repo),
    server: DatabaseServer = Depends(get_server),
) -> dict:
    result = await tenant_service.delete_tenant(tenants, tenant_id, drop_database, server=server)
    return success_response(
        request=request,
        data=TenantDeleteResponse(
            success=result.success,
            message=result.message,
            was_provisioned=result.was_provisioned,
            database_dropped=result.database_dropped,
            user_dropped=result.user_dropped,
            database_name=result.database_name,
            database_user=result.database_user,
            drop_error=result.drop_error,
        ),
    )


@router.post(
    "/{tenant_id}/contacts",
    status_code=201,
    response_model=SuccessEnvelope[TenantContactResponse] | TenantContactResponse,
)
async def add_contact(
    tenant_id: str,
    payload: TenantContactRequest,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    data = tenant_service.TenantContactCreate(**payload.model_dump())
    contact = await tenant_service.add_contact(tenants, tenant_id, data)
    return success_response(request=request, data=_contact_response(contact))


@router.get(
    "/{tenant_id}/contacts",
    response_model=SuccessEnvelope[list[TenantContactResponse]] | list[TenantContactResponse],
)
async def list_contacts(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    contacts = await tenant_service.list_contacts(tenants, tenant_id)
    return success_response(request=request, data=[_contact_response(contact) for contact in contacts])
