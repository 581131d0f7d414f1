from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from paxadmin.apps.api.deps import get_module_repo, require_service_key
from paxadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from paxadmin.apps.api.response import SuccessEnvelope, success_response
from paxadmin.domain.models import Module
from paxadmin.persistence.repos.modules import ModuleRepository
from paxadmin.services import modules as module_service


router = APIRouter(
    prefix="/modules",
    tags=["modules"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_service_key)],
)


class ModuleCreateRequest(BaseModel):
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    version: str = "1.0.0"
    is_core: bool = False
    is_custom: bool = False
    repository_url: str | None = None
    module_path: str | None = None
    migrations_path: str | None = None

    model_config = {"extra": "forbid"}


class ModuleUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    version: str | None = None
    is_active: bool | None = None
    is_custom: bool | None = None
    repository_url: str | None = None
    module_path: str | None = None
    migrations_path: str | None = None

    model_config = {"extra": "forbid"}


class ModuleResponse(BaseModel):
    id: str
    code: str
    name: str
    description: str | None = None
    version: str
    is_core: bool
    is_custom: bool
    is_active: bool
    repository_url: str | None = None
    module_path: str | None = None
    migrations_path: str | None = None
    created_at: datetime | None = None


class ModuleDeleteResponse(BaseModel):
    success: bool
    message: str


def _to_response(module: Module) -> ModuleResponse:
    return ModuleResponse(
        id=module.id,
        code=module.code,
        name=module.name,
        description=module.description,
        version=module.version,
        is_core=module.is_core,
        is_custom=module.is_custom,
        is_active=module.is_active,
        repository_url=module.repository_url,
        module_path=module.module_path,
        migrations_path=module.migrations_path,
        created_at=module.created_at,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[ModuleResponse] | ModuleResponse)
async def create_module(
    payload: ModuleCreateRequest,
    request: Request,
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    module = await module_service.create_module(modules, module_service.ModuleCreate(**payload.model_dump()))
    return success_response(request=request, data=_to_response(module))


@router.get("", response_model=SuccessEnvelope[list[ModuleResponse]] | list[ModuleResponse])
async def list_modules(
    request: Request,
    is_custom: bool | None = Query(default=None),
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    items = await module_service.list_modules(modules, is_custom=is_custom)
    return success_response(request=request, data=[_to_response(module) for module in items])


@router.post("/seed", response_model=SuccessEnvelope[list[ModuleResponse]] | list[ModuleResponse])
async def seed_modules(
    request: Request,
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    items = await module_service.seed_modules(modules)
    return success_response(request=request, data=[_to_response(module) for module in items])


@router.get("/{module_id}", response_model=SuccessEnvelope[ModuleResponse] | ModuleResponse)
async def get_module(
    module_id: str,
    request: Request,
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    module = await module_service.get_module(modules, module_id)
    return success_response(request=request, data=_to_response(module))


@router.patch("/{module_id}", response_model=SuccessEnvelope[ModuleResponse] | ModuleResponse)
async def update_module(
    module_id: str,
    payload: ModuleUpdateRequest,
    request: Request,
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    module = await module_service.update_module(modules, module_id, **payload.model_dump(exclude_unset=True))
    return success_response(request=request, data=_to_response(module))


@router.delete("/{module_id}", response_model=SuccessEnvelope[ModuleDeleteResponse] | ModuleDeleteResponse)
async def delete_module(
    module_id: str,
    request: Request,
    modules: ModuleRepository = Depends(get_module_repo),
) -> dict:
    await module_service.delete_module(modules, module_id)
    return success_response(request=request, data=ModuleDeleteResponse(success=True, message="Module deleted"))
