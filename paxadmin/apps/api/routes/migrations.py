from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from paxadmin.apps.api.deps import get_runner, get_server, get_tenant_repo, require_service_key
from paxadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from paxadmin.apps.api.response import SuccessEnvelope, success_response
from paxadmin.persistence.repos.tenants import TenantRepository
from paxadmin.services import migrations
from paxadmin.services.database_server import DatabaseServer
from paxadmin.services.migrations import MigrationRunner, MigrationRunResult


router = APIRouter(
    prefix="/migrations",
    tags=["migrations"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_service_key)],
)


class ModuleMigrationResponse(BaseModel):
    module: str
    type: str
    success: bool
    message: str


class MigrationRunResponse(BaseModel):
    success: bool
    message: str
    results: list[ModuleMigrationResponse] = Field(default_factory=list)


class ModuleMigrationStatus(BaseModel):
    module_id: str
    module_code: str
    module_name: str
    is_custom: bool
    is_enabled: bool
    migrations_applied: bool
    migrations_applied_at: datetime | None = None
    schema_version: str | None = None
    needs_migration: bool
    version_drift: bool


class MigrationStatusResponse(BaseModel):
    provisioned: bool
    migrations_applied: bool
    pending_migrations_count: int
    modules: list[ModuleMigrationStatus] = Field(default_factory=list)


def _run_response(result: MigrationRunResult) -> MigrationRunResponse:
    return MigrationRunResponse(
        success=result.success,
        message=result.message,
        results=[ModuleMigrationResponse(**asdict(item)) for item in result.results],
    )


# The body reports per-module outcomes; a failed module does not turn this into an error status.
@router.post("/tenant/{tenant_id}/apply", response_model=SuccessEnvelope[MigrationRunResponse] | MigrationRunResponse)
async def apply_migrations(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    runner: MigrationRunner = Depends(get_runner),
    server: DatabaseServer = Depends(get_server),
) -> dict:
    result = await migrations.apply_migrations(tenants, tenant_id, runner=runner, server=server)
    return success_response(request=request, data=_run_response(result))


@router.post(
    "/tenant/{tenant_id}/module/{module_id}/apply",
    response_model=SuccessEnvelope[ModuleMigrationResponse] | ModuleMigrationResponse,
)
async def apply_module_migrations(
    tenant_id: str,
    module_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    runner: MigrationRunner = Depends(get_runner),
    server: DatabaseServer = Depends(get_server),
) -> dict:
    result = await migrations.apply_module_migrations(tenants, tenant_id, module_id, runner=runner, server=server)
    return success_response(request=request, data=ModuleMigrationResponse(**asdict(result)))


@router.post(
    "/tenant/{tenant_id}/apply-pending",
    response_model=SuccessEnvelope[MigrationRunResponse] | MigrationRunResponse,
)
async def apply_pending_migrations(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    runner: MigrationRunner = Depends(get_runner),
    server: DatabaseServer = Depends(get_server),
) -> dict:
    result = await migrations.apply_pending_migrations(tenants, tenant_id, runner=runner, server=server)
    return success_response(request=request, data=_run_response(result))


@router.get("/tenant/{tenant_id}/status", response_model=SuccessEnvelope[MigrationStatusResponse] | MigrationStatusResponse)
async def migrations_status(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    status = await migrations.get_migrations_status(tenants, tenant_id)
    return success_response(request=request, data=MigrationStatusResponse(**status))
