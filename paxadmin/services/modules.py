from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from paxadmin.core.errors import ConflictError, NotFoundError, ValidationError
from paxadmin.domain.models import Module
from paxadmin.persistence.repos.modules import ModuleRepository


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"name", "description", "version", "is_active", "is_custom", "repository_url", "module_path", "migrations_path"}
)

# Modules every installation ships with: the mandatory core and the optional internal chat.
DEFAULT_MODULES: tuple[dict[str, Any], ...] = (
    {
        "code": "core",
        "name": "Core",
        "description": "Authentication, users, company, branches and permissions",
        "is_core": True,
        "is_custom": False,
    },
    {
        "code": "internal_chat",
        "name": "Internal chat",
        "description": "Internal chat between employees (channels and messages)",
        "is_core": False,
        "is_custom": False,
    },
)


@dataclass(frozen=True)
class ModuleCreate:
    code: str
    name: str
    description: str | None = None
    version: str = "1.0.0"
    is_core: bool = False
    is_custom: bool = False
    repository_url: str | None = None
    # Folder name under the workspace root, e.g. "pax-messaging-service".
    module_path: str | None = None
    migrations_path: str | None = None


def _require_module_path(is_custom: bool, module_path: str | None) -> None:
    if is_custom and not module_path:
        raise ValidationError(
            "Custom modules need module_path set to the project folder name under the workspace root"
        )


async def get_module(modules: ModuleRepository, module_id: str) -> Module:
    module = await modules.get(module_id)
    if module is None:
        raise NotFoundError("Module not found")
    return module


async def create_module(modules: ModuleRepository, data: ModuleCreate) -> Module:
    if await modules.get_by_code(data.code) is not None:
        raise ConflictError("A module with this code already exists")
    _require_module_path(data.is_custom, data.module_path)
    module = Module(
        code=data.code,
        name=data.name,
        description=data.description,
        version=data.version,
        is_core=data.is_core,
        is_custom=data.is_custom,
        is_active=True,
        repository_url=data.repository_url,
        module_path=data.module_path,
        migrations_path=data.migrations_path,
    )
    module = await modules.add(module)
    await modules.commit()
    logger.info("module_created module=%s custom=%s", module.code, module.is_custom)
    return module


async def list_modules(modules: ModuleRepository, *, is_custom: bool | None = None) -> list[Module]:
    return await modules.list(is_custom=is_custom)


async def update_module(modules: ModuleRepository, module_id: str, **fields: Any) -> Module:
    module = await get_module(modules, module_id)
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    changes = {key: value for key, value in fields.items() if value is not None}
    # Validate the resulting state, not just the patch.
    _require_module_path(
        changes.get("is_custom", module.is_custom),
        changes.get("module_path", module.module_path),
    )
    if changes:
        await modules.update_fields(module, **changes)
        await modules.commit()
    return module


async def delete_module(modules: ModuleRepository, module_id: str) -> None:
    module = await get_module(modules, module_id)
    if module.is_core:
        raise ValidationError("Core modules cannot be deleted")
    in_use = await modules.count_enabled_tenants(module.id)
    if in_use:
        raise ConflictError(f"Module is enabled for {in_use} tenant(s); disable it there before deleting")
    await modules.delete(module)
    await modules.commit()
    logger.info("module_deleted module=%s", module.code)


async def seed_modules(modules: ModuleRepository) -> list[Module]:
    # Upsert by code; safe to run on every deploy.
    for defaults in DEFAULT_MODULES:
        existing = await modules.get_by_code(defaults["code"])
        if existing is None:
            await modules.add(Module(**defaults, is_active=True))
            logger.info("module_seeded module=%s", defaults["code"])
        else:
            await modules.update_fields(existing, **{key: value for key, value in defaults.items() if key != "code"})
    await modules.commit()
    return await modules.list()
