from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paxadmin.domain.models import Tenant, TenantContact, TenantModule


@dataclass(frozen=True)
class TenantFilters:
    # Explicit filter fields accepted by tenant listings.
    status: str | None = None
    search: str | None = None


class TenantRepository(Protocol):
    async def get(self, tenant_id: str) -> Tenant | None:
        ...

    async def get_by_code(self, code: str) -> Tenant | None:
        ...

    async def get_by_id_or_code(self, ref: str) -> Tenant | None:
        ...

    async def find_by_code_or_document(self, code: str, document: str) -> Tenant | None:
        ...

    async def list(self, filters: TenantFilters) -> list[Tenant]:
        ...

    async def list_provisioned(self) -> list[Tenant]:
        ...

    async def add(self, tenant: Tenant) -> Tenant:
        ...

    async def delete(self, tenant: Tenant) -> None:
        ...

    async def update_fields(self, tenant: Tenant, **fields: Any) -> Tenant:
        ...

    async def get_tenant_module(self, tenant_id: str, module_id: str) -> TenantModule | None:
        ...

    async def add_tenant_module(self, tenant_module: TenantModule) -> TenantModule:
        ...

    async def replace_modules(self, tenant: Tenant, module_ids: list[str]) -> Tenant:
        ...

    async def update_tenant_module(self, tenant_module: TenantModule, **fields: Any) -> TenantModule:
        ...

    async def mark_module_applied(
        self, tenant_module: TenantModule, *, schema_version: str, applied_at: datetime
    ) -> TenantModule:
        ...

    async def count_by_status(self) -> dict[str, int]:
        ...

    async def add_contact(self, contact: TenantContact) -> TenantContact:
        ...

    async def list_contacts(self, tenant_id: str) -> list[TenantContact]:
        ...

    async def commit(self) -> None:
        ...


def _with_modules(stmt):
    # Orchestration walks tenant.modules[*].module, so load both levels eagerly.
    return stmt.options(selectinload(Tenant.modules).selectinload(TenantModule.module))


class SqlTenantRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> Tenant | None:
        result = await self._session.execute(_with_modules(select(Tenant).where(Tenant.id == tenant_id)))
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Tenant | None:
        result = await self._session.execute(_with_modules(select(Tenant).where(Tenant.code == code)))
        return result.scalar_one_or_none()

    async def get_by_id_or_code(self, ref: str) -> Tenant | None:
        result = await self._session.execute(
            _with_modules(select(Tenant).where(or_(Tenant.id == ref, Tenant.code == ref)))
        )
        return result.scalars().first()

    async def find_by_code_or_document(self, code: str, document: str) -> Tenant | None:
        result = await self._session.execute(
            select(Tenant).where(or_(Tenant.code == code, Tenant.document == document))
        )
        return result.scalars().first()

    async def list(self, filters: TenantFilters) -> list[Tenant]:
        stmt = select(Tenant)
        if filters.status:
            stmt = stmt.where(Tenant.status == filters.status)
        if filters.search:
            pattern = f"%{filters.search}%"
            stmt = stmt.where(
                or_(
                    Tenant.name.ilike(pattern),
                    Tenant.code.ilike(pattern),
                    Tenant.document.like(pattern),
                )
            )
        result = await self._session.execute(_with_modules(stmt.order_by(Tenant.created_at.desc())))
        return list(result.scalars().all())

    async def list_provisioned(self) -> list[Tenant]:
        result = await self._session.execute(
            _with_modules(select(Tenant).where(Tenant.is_provisioned.is_(True)).order_by(Tenant.code))
        )
        return list(result.scalars().all())

    async def add(self, tenant: Tenant) -> Tenant:
        self._session.add(tenant)
        await self._session.flush()
        return tenant

    async def delete(self, tenant: Tenant) -> None:
        await self._session.delete(tenant)
        await self._session.flush()

    async def update_fields(self, tenant: Tenant, **fields: Any) -> Tenant:
        for key, value in fields.items():
            setattr(tenant, key, value)
        await self._session.flush()
        return tenant

    async def get_tenant_module(self, tenant_id: str, module_id: str) -> TenantModule | None:
        result = await self._session.execute(
            select(TenantModule).where(
                TenantModule.tenant_id == tenant_id,
                TenantModule.module_id == module_id,
            )
        )
        return result.scalar_one_or_none()

    async def add_tenant_module(self, tenant_module: TenantModule) -> TenantModule:
        self._session.add(tenant_module)
        await self._session.flush()
        return tenant_module

    async def replace_modules(self, tenant: Tenant, module_ids: list[str]) -> Tenant:
        # Drop every association and recreate; migration flags start over for the new set.
        await self._session.execute(delete(TenantModule).where(TenantModule.tenant_id == tenant.id))
        for position, module_id in enumerate(module_ids):
            self._session.add(
                TenantModule(tenant_id=tenant.id, module_id=module_id, is_enabled=True, position=position)
            )
        await self._session.flush()
        self._session.expire(tenant, ["modules"])
        refreshed = await self.get(tenant.id)
        return refreshed if refreshed is not None else tenant

    async def update_tenant_module(self, tenant_module: TenantModule, **fields: Any) -> TenantModule:
        for key, value in fields.items():
            setattr(tenant_module, key, value)
        await self._session.flush()
        return tenant_module

    async def mark_module_applied(
        self, tenant_module: TenantModule, *, schema_version: str, applied_at: datetime
    ) -> TenantModule:
        tenant_module.migrations_applied = True
        tenant_module.migrations_applied_at = applied_at
        tenant_module.schema_version = schema_version
        await self._session.flush()
        return tenant_module

    async def count_by_status(self) -> dict[str, int]:
        result = await self._session.execute(select(Tenant.status, func.count()).group_by(Tenant.status))
        return {status: int(count) for status, count in result.all()}

    async def add_contact(self, contact: TenantContact) -> TenantContact:
        self._session.add(contact)
        await self._session.flush()
        return contact

    async def list_contacts(self, tenant_id: str) -> list[TenantContact]:
        result = await self._session.execute(
            select(TenantContact)
            .where(TenantContact.tenant_id == tenant_id)
            .order_by(TenantContact.is_primary.desc(), TenantContact.created_at)
        )
        return list(result.scalars().all())

    async def commit(self) -> None:
        await self._session.commit()
