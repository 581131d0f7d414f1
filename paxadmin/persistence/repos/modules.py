from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paxadmin.domain.models import Module, Plan, PlanModule, TenantModule


class ModuleRepository(Protocol):
    async def get(self, module_id: str) -> Module | None:
        ...

    async def get_by_code(self, code: str) -> Module | None:
        ...

    async def list(self, *, is_custom: bool | None = None) -> list[Module]:
        ...

    async def list_core(self) -> list[Module]:
        ...

    async def get_many(self, module_ids: list[str], *, active_only: bool = True) -> list[Module]:
        ...

    async def add(self, module: Module) -> Module:
        ...

    async def update_fields(self, module: Module, **fields: Any) -> Module:
        ...

    async def delete(self, module: Module) -> None:
        ...

    async def count_enabled_tenants(self, module_id: str) -> int:
        ...

    async def commit(self) -> None:
        ...


class PlanRepository(Protocol):
    async def get_module_ids(self, plan_id: str) -> list[str] | None:
        ...


class SqlModuleRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, module_id: str) -> Module | None:
        return await self._session.get(Module, module_id)

    async def get_by_code(self, code: str) -> Module | None:
        result = await self._session.execute(select(Module).where(Module.code == code))
        return result.scalar_one_or_none()

    async def list(self, *, is_custom: bool | None = None) -> list[Module]:
        stmt = select(Module)
        if is_custom is not None:
            stmt = stmt.where(Module.is_custom.is_(is_custom))
        # Core first, then standard before custom, then by name.
        stmt = stmt.order_by(Module.is_core.desc(), Module.is_custom.asc(), Module.name.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_core(self) -> list[Module]:
        result = await self._session.execute(
            select(Module).where(Module.is_core.is_(True), Module.is_active.is_(True))
        )
        return list(result.scalars().all())

    async def get_many(self, module_ids: list[str], *, active_only: bool = True) -> list[Module]:
        if not module_ids:
            return []
        stmt = select(Module).where(Module.id.in_(module_ids))
        if active_only:
            stmt = stmt.where(Module.is_active.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, module: Module) -> Module:
        self._session.add(module)
        await self._session.flush()
        return module

    async def update_fields(self, module: Module, **fields: Any) -> Module:
        for key, value in fields.items():
            setattr(module, key, value)
        await self._session.flush()
        return module

    async def delete(self, module: Module) -> None:
        await self._session.delete(module)
        await self._session.flush()

    async def count_enabled_tenants(self, module_id: str) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(TenantModule)
            .where(TenantModule.module_id == module_id, TenantModule.is_enabled.is_(True))
        )
        return int(result.scalar_one())

    async def commit(self) -> None:
        await self._session.commit()


class SqlPlanRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_module_ids(self, plan_id: str) -> list[str] | None:
        # None means the plan does not exist; an empty list is a plan with no modules.
        plan = await self._session.get(Plan, plan_id)
        if plan is None:
            return None
        result = await self._session.execute(
            select(PlanModule.module_id).where(PlanModule.plan_id == plan_id)
        )
        return [row[0] for row in result.all()]
