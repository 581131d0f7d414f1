from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from paxadmin.apps.api.deps import get_server, get_tenant_repo, require_service_key
from paxadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from paxadmin.apps.api.response import SuccessEnvelope, success_response
from paxadmin.persistence.repos.tenants import TenantRepository
from paxadmin.services import provisioning
from paxadmin.services.connections import resolve_connection
from paxadmin.services.database_server import DatabaseServer


router = APIRouter(
    prefix="/provisioning",
    tags=["provisioning"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_service_key)],
)


class ProvisionResponse(BaseModel):
    host: str
    port: int
    database_name: str
    database_user: str
    connection_string: str
    message: str


class DeprovisionResponse(BaseModel):
    success: bool
    database_dropped: bool
    user_dropped: bool
    message: str


class ConnectionResponse(BaseModel):
    connection_string: str


class TenantHealthResponse(BaseModel):
    healthy: bool
    message: str
    error: str | None = None


@router.post("/tenant/{tenant_id}", response_model=SuccessEnvelope[ProvisionResponse] | ProvisionResponse)
async def provision_tenant(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    server: DatabaseServer = Depends(get_server),
) -> dict:
    result = await provisioning.provision_tenant(tenants, tenant_id, server=server)
    return success_response(request=request, data=ProvisionResponse(**asdict(result)))


@router.delete("/tenant/{tenant_id}", response_model=SuccessEnvelope[DeprovisionResponse] | DeprovisionResponse)
async def deprovision_tenant(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    server: DatabaseServer = Depends(get_server),
) -> dict:
    result = await provisioning.deprovision_tenant(tenants, tenant_id, server=server)
    return success_response(request=request, data=DeprovisionResponse(**asdict(result)))


# tenant_id accepts the tenant id or its code; module scopes the check to one enabled module.
@router.get(
    "/tenant/{tenant_id}/connection",
    response_model=SuccessEnvelope[ConnectionResponse] | ConnectionResponse,
)
async def get_connection(
    tenant_id: str,
    request: Request,
    module: str | None = Query(default=None),
    tenants: TenantRepository = Depends(get_tenant_repo),
) -> dict:
    info = await resolve_connection(tenants, tenant_id, module)
    return success_response(request=request, data=ConnectionResponse(connection_string=info.connection_string))


@router.get("/tenant/{tenant_id}/health", response_model=SuccessEnvelope[TenantHealthResponse] | TenantHealthResponse)
async def tenant_health(
    tenant_id: str,
    request: Request,
    tenants: TenantRepository = Depends(get_tenant_repo),
    server: DatabaseServer = Depends(get_server),
) -> dict:
    result = await provisioning.check_health(tenants, tenant_id, server=server)
    return success_response(request=request, data=TenantHealthResponse(**asdict(result)))
