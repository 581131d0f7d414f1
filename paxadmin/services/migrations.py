from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Protocol, Sequence

from paxadmin.core.config import get_settings
from paxadmin.core.errors import (
    ExternalOperationError,
    MigrationTimeoutError,
    NotFoundError,
    PaxAdminError,
    ValidationError,
)
from paxadmin.domain.models import Module, Tenant, TenantModule
from paxadmin.persistence.repos.tenants import TenantRepository
from paxadmin.services.connections import build_connection_string, ensure_provisioned
from paxadmin.services.database_server import SERVER_ERRORS, DatabaseServer, get_database_server


logger = logging.getLogger(__name__)

# Every migration project (standard or custom) is an Alembic project with this descriptor.
SCHEMA_DESCRIPTOR = "alembic.ini"
STANDARD_LABEL = "standard"

MigrationType = Literal["standard", "custom"]


class MigrationRunner(Protocol):
    async def migrate_latest(self, project_dir: Path, connection_string: str) -> str:
        ...


@dataclass(frozen=True)
class ModuleMigrationResult:
    module: str
    type: MigrationType
    success: bool
    message: str


@dataclass(frozen=True)
class MigrationRunResult:
    success: bool
    message: str
    results: list[ModuleMigrationResult] = field(default_factory=list)


class AlembicRunner:
    """Run ``alembic upgrade head`` for one project against one tenant database.

    The child gets the tenant connection string as ``DATABASE_URL`` and is
    killed when it outlives ``timeout_s``.
    """

    def __init__(self, timeout_s: float | None = None) -> None:
        self._timeout_s = float(timeout_s if timeout_s is not None else get_settings().migration_timeout_s)

    async def migrate_latest(self, project_dir: Path, connection_string: str) -> str:
        logger.info("migration_tool_started project=%s", project_dir)
        env = {**os.environ, "DATABASE_URL": connection_string}
        try:
            proc = await asyncio.create_subprocess_exec(
                sys.executable,
                "-m",
                "alembic",
                "-c",
                str(project_dir / SCHEMA_DESCRIPTOR),
                "upgrade",
                "head",
                cwd=str(project_dir),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ExternalOperationError("Migration", str(exc)) from exc
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            logger.warning("migration_tool_timeout project=%s timeout_s=%s", project_dir, self._timeout_s)
            raise MigrationTimeoutError(
                "Migration", f"timed out after {self._timeout_s:g}s in {project_dir}"
            ) from exc
        output = (stdout or b"").decode("utf-8", errors="ignore").strip()
        if proc.returncode != 0:
            logger.warning(
                "migration_tool_failed project=%s returncode=%s output=%s", project_dir, proc.returncode, output
            )
            raise ExternalOperationError("Migration", output or f"exit code {proc.returncode}")
        logger.info("migration_tool_finished project=%s output=%s", project_dir, output)
        return output or "Already at head"


def get_migration_runner() -> MigrationRunner:
    # Allow tests to monkeypatch the migration tool without spawning processes.
    return AlembicRunner()


# Entries live only while a pass holds or awaits them.
_tenant_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def _tenant_lock(tenant_id: str) -> asyncio.Lock:
    # Serialize migration passes per tenant within this process.
    lock = _tenant_locks.get(tenant_id)
    if lock is None:
        lock = asyncio.Lock()
        _tenant_locks[tenant_id] = lock
    return lock


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def standard_project_dir() -> Path:
    return Path(get_settings().database_project_path).resolve()


def standard_module_sql_files(module_code: str) -> list[Path]:
    # File names sort in execution order; a missing or empty folder means no scripts.
    settings = get_settings()
    sql_dir = standard_project_dir() / settings.standard_module_sql_dir / module_code
    if not sql_dir.is_dir():
        return []
    return sorted((path for path in sql_dir.iterdir() if path.is_file() and path.suffix == ".sql"), key=lambda p: p.name)


def custom_migrations_dir(module: Module) -> Path:
    settings = get_settings()
    if not module.module_path:
        raise ValidationError(f"Custom module {module.code} has no module_path configured")
    module_dir = Path(settings.workspace_root).resolve() / module.module_path
    if not module_dir.is_dir():
        raise ValidationError(f"Module folder not found: {module_dir}")
    subfolder = module.migrations_path or settings.module_migrations_dir
    migrations_dir = module_dir / subfolder
    if not (migrations_dir / SCHEMA_DESCRIPTOR).is_file():
        raise ValidationError(f"Schema descriptor not found at {subfolder}/{SCHEMA_DESCRIPTOR}")
    return migrations_dir


async def _provisioned_tenant(repo: TenantRepository, tenant_id: str) -> Tenant:
    tenant = await repo.get(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    ensure_provisioned(tenant)
    return tenant


async def _mark_applied(repo: TenantRepository, tenant_module: TenantModule) -> None:
    await repo.mark_module_applied(
        tenant_module,
        schema_version=tenant_module.module.version,
        applied_at=_utc_now(),
    )
    await repo.commit()


async def _run_module_sql(server: DatabaseServer, connection_string: str, files: Sequence[Path]) -> str:
    try:
        executed = await server.run_sql_files(connection_string, files)
    except (*SERVER_ERRORS, UnicodeDecodeError) as exc:
        raise ExternalOperationError("Module SQL migration", str(exc)) from exc
    return f"Files applied: {', '.join(executed)}"


def _summary(prefix: str, results: list[ModuleMigrationResult]) -> MigrationRunResult:
    failed = sum(1 for result in results if not result.success)
    succeeded = len(results) - failed
    return MigrationRunResult(
        success=failed == 0,
        message=f"{prefix}: {succeeded} succeeded, {failed} failed",
        results=results,
    )


async def _run_stages(
    repo: TenantRepository,
    tenant: Tenant,
    tenant_modules: list[TenantModule],
    *,
    always_run_standard: bool,
    runner: MigrationRunner,
    server: DatabaseServer,
) -> list[ModuleMigrationResult]:
    """Apply the three migration stages to ``tenant_modules`` in order.

    Failures are recorded per module and never abort the remaining modules.
    """
    connection_string = build_connection_string(tenant)
    results: list[ModuleMigrationResult] = []

    standard = [tm for tm in tenant_modules if not tm.module.is_custom]
    sql_files = {tm.id: standard_module_sql_files(tm.module.code) for tm in standard}
    with_sql = [tm for tm in standard if sql_files[tm.id]]
    without_sql = [tm for tm in standard if not sql_files[tm.id]]

    # Stage 1: the standard chain. Modules without scripts are covered by it.
    if always_run_standard or without_sql:
        try:
            output = await runner.migrate_latest(standard_project_dir(), connection_string)
            chain_error: str | None = None
            results.append(ModuleMigrationResult(STANDARD_LABEL, "standard", True, output))
        except PaxAdminError as exc:
            chain_error = exc.message
            logger.warning("standard_migrations_failed tenant=%s error=%s", tenant.code, exc.message)
            results.append(ModuleMigrationResult(STANDARD_LABEL, "standard", False, exc.message))
        for tm in without_sql:
            if chain_error is None:
                await _mark_applied(repo, tm)
                results.append(
                    ModuleMigrationResult(tm.module.code, "standard", True, "Covered by standard migrations")
                )
            else:
                results.append(ModuleMigrationResult(tm.module.code, "standard", False, chain_error))

    # Stage 2: per-module SQL scripts, one connection per module.
    for tm in with_sql:
        module = tm.module
        logger.info(
            "module_sql_migrations_started tenant=%s module=%s files=%s",
            tenant.code,
            module.code,
            ",".join(path.name for path in sql_files[tm.id]),
        )
        try:
            message = await _run_module_sql(server, connection_string, sql_files[tm.id])
        except PaxAdminError as exc:
            logger.warning("module_migrations_failed tenant=%s module=%s error=%s", tenant.code, module.code, exc.message)
            results.append(ModuleMigrationResult(module.code, "standard", False, exc.message))
            continue
        await _mark_applied(repo, tm)
        results.append(ModuleMigrationResult(module.code, "standard", True, message))

    # Stage 3: custom module projects.
    for tm in tenant_modules:
        module = tm.module
        if not module.is_custom:
            continue
        if not module.module_path:
            logger.warning("custom_module_skipped tenant=%s module=%s reason=no_module_path", tenant.code, module.code)
            continue
        try:
            migrations_dir = custom_migrations_dir(module)
            output = await runner.migrate_latest(migrations_dir, connection_string)
        except PaxAdminError as exc:
            logger.warning("module_migrations_failed tenant=%s module=%s error=%s", tenant.code, module.code, exc.message)
            results.append(ModuleMigrationResult(module.code, "custom", False, exc.message))
            continue
        await _mark_applied(repo, tm)
        results.append(ModuleMigrationResult(module.code, "custom", True, output))

    return results


async def apply_migrations(
    repo: TenantRepository,
    tenant_id: str,
    *,
    runner: MigrationRunner | None = None,
    server: DatabaseServer | None = None,
) -> MigrationRunResult:
    tenant = await _provisioned_tenant(repo, tenant_id)
    async with _tenant_lock(tenant.id):
        logger.info("tenant_migrations_started tenant=%s database=%s", tenant.code, tenant.database_name)
        enabled = [tm for tm in tenant.modules if tm.is_enabled]
        results = await _run_stages(
            repo,
            tenant,
            enabled,
            always_run_standard=True,
            runner=runner or get_migration_runner(),
            server=server or get_database_server(),
        )
    outcome = _summary("Migrations applied", results)
    logger.info("tenant_migrations_finished tenant=%s success=%s", tenant.code, outcome.success)
    return outcome


async def apply_pending_migrations(
    repo: TenantRepository,
    tenant_id: str,
    *,
    runner: MigrationRunner | None = None,
    server: DatabaseServer | None = None,
) -> MigrationRunResult:
    tenant = await _provisioned_tenant(repo, tenant_id)
    async with _tenant_lock(tenant.id):
        pending = [tm for tm in tenant.modules if tm.is_enabled and not tm.migrations_applied]
        if not pending:
            return MigrationRunResult(success=True, message="No pending migrations", results=[])
        logger.info("tenant_pending_migrations_started tenant=%s pending=%s", tenant.code, len(pending))
        results = await _run_stages(
            repo,
            tenant,
            pending,
            always_run_standard=False,
            runner=runner or get_migration_runner(),
            server=server or get_database_server(),
        )
    return _summary("Pending migrations applied", results)


async def apply_module_migrations(
    repo: TenantRepository,
    tenant_id: str,
    module_id: str,
    *,
    runner: MigrationRunner | None = None,
    server: DatabaseServer | None = None,
) -> ModuleMigrationResult:
    tenant = await _provisioned_tenant(repo, tenant_id)
    tenant_module = next((tm for tm in tenant.modules if tm.module_id == module_id), None)
    if tenant_module is None:
        raise NotFoundError("Module is not associated with this tenant; enable it first")
    if not tenant_module.is_enabled:
        raise ValidationError("Module is disabled; enable it first")

    module = tenant_module.module
    runner = runner or get_migration_runner()
    async with _tenant_lock(tenant.id):
        connection_string = build_connection_string(tenant)
        logger.info("module_migrations_started tenant=%s module=%s", tenant.code, module.code)
        if module.is_custom:
            message = await runner.migrate_latest(custom_migrations_dir(module), connection_string)
            migration_type: MigrationType = "custom"
        else:
            files = standard_module_sql_files(module.code)
            if files:
                message = await _run_module_sql(server or get_database_server(), connection_string, files)
            else:
                message = await runner.migrate_latest(standard_project_dir(), connection_string)
            migration_type = "standard"
        await _mark_applied(repo, tenant_module)
    return ModuleMigrationResult(module=module.code, type=migration_type, success=True, message=message)


async def get_migrations_status(repo: TenantRepository, tenant_id: str) -> dict[str, Any]:
    tenant = await repo.get(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    if not tenant.is_provisioned:
        return {
            "provisioned": False,
            "migrations_applied": False,
            "pending_migrations_count": 0,
            "modules": [],
        }

    modules = []
    for tm in tenant.modules:
        needs_migration = tm.is_enabled and not tm.migrations_applied
        modules.append(
            {
                "module_id": tm.module_id,
                "module_code": tm.module.code,
                "module_name": tm.module.name,
                "is_custom": tm.module.is_custom,
                "is_enabled": tm.is_enabled,
                "migrations_applied": tm.migrations_applied,
                "migrations_applied_at": tm.migrations_applied_at,
                "schema_version": tm.schema_version,
                "needs_migration": needs_migration,
                # Reported only; a version bump does not reset the applied flag.
                "version_drift": tm.migrations_applied and tm.schema_version != tm.module.version,
            }
        )
    return {
        "provisioned": True,
        "migrations_applied": any(tm.migrations_applied for tm in tenant.modules),
        "pending_migrations_count": sum(1 for module in modules if module["needs_migration"]),
        "modules": modules,
    }
