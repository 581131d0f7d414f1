from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from paxadmin.core.config import get_settings
from paxadmin.persistence.db import get_session
from paxadmin.persistence.repos.modules import (
    ModuleRepository,
    PlanRepository,
    SqlModuleRepository,
    SqlPlanRepository,
)
from paxadmin.persistence.repos.tenants import SqlTenantRepository, TenantRepository
from paxadmin.services.database_server import DatabaseServer, get_database_server
from paxadmin.services.migrations import MigrationRunner, get_migration_runner


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def get_tenant_repo(db: AsyncSession = Depends(get_db)) -> TenantRepository:
    return SqlTenantRepository(db)


def get_module_repo(db: AsyncSession = Depends(get_db)) -> ModuleRepository:
    return SqlModuleRepository(db)


def get_plan_repo(db: AsyncSession = Depends(get_db)) -> PlanRepository:
    return SqlPlanRepository(db)


def get_server() -> DatabaseServer:
    return get_database_server()


def get_runner() -> MigrationRunner:
    return get_migration_runner()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def require_service_key(
    x_service_key: str | None = Header(default=None, alias="X-Service-Key"),
) -> None:
    # Internal clients share one secret; compare in constant time.
    settings = get_settings()
    if not settings.service_auth_enabled:
        return
    if not settings.service_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service key is not configured"},
        )
    if not x_service_key:
        raise _auth_error("Missing X-Service-Key header")
    if not hmac.compare_digest(x_service_key.encode("utf-8"), settings.service_key.encode("utf-8")):
        raise _auth_error("Invalid service key")
