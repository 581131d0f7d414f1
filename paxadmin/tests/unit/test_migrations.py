from __future__ import annotations

import asyncio
import gc
from pathlib import Path

import pytest

from paxadmin.core.errors import (
    ExternalOperationError,
    MigrationTimeoutError,
    NotFoundError,
    NotProvisionedError,
    ValidationError,
)
from paxadmin.services import database_server, migrations
from paxadmin.services.database_server import PostgresServer
from paxadmin.services.migrations import (
    STANDARD_LABEL,
    apply_migrations,
    apply_module_migrations,
    apply_pending_migrations,
    get_migrations_status,
    standard_module_sql_files,
)
from paxadmin.tests.utils.fakes import (
    FakeDatabaseServer,
    FakeMigrationRunner,
    InMemoryModuleRepository,
    InMemoryTenantRepository,
    RecordingConnector,
    attach_module,
    make_module,
    make_tenant,
)


def _repo(*tenants) -> InMemoryTenantRepository:
    return InMemoryTenantRepository(InMemoryModuleRepository(), tenants)


def _write_sql(database_project: Path, module_code: str, *names: str) -> Path:
    sql_dir = database_project / "module_migrations" / module_code
    sql_dir.mkdir(parents=True, exist_ok=True)
    for name in names:
        (sql_dir / name).write_text("SELECT 1;\n", encoding="utf-8")
    return sql_dir


def _custom_project(workspace_root: Path, folder: str, subfolder: str = "alembic") -> Path:
    migrations_dir = workspace_root / folder / subfolder
    migrations_dir.mkdir(parents=True)
    (migrations_dir / "alembic.ini").write_text("[alembic]\n", encoding="utf-8")
    return migrations_dir


def _by_module(results) -> dict:
    return {result.module: result for result in results}


def test_sql_files_sorted_and_filtered(database_project: Path) -> None:
    sql_dir = _write_sql(database_project, "internal_chat", "010_c.sql", "002_b.sql", "001_a.sql")
    (sql_dir / "README.md").write_text("notes", encoding="utf-8")
    assert [path.name for path in standard_module_sql_files("internal_chat")] == [
        "001_a.sql",
        "002_b.sql",
        "010_c.sql",
    ]
    assert standard_module_sql_files("unknown") == []


@pytest.mark.asyncio
async def test_pending_with_nothing_pending_contacts_nothing() -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("core", is_core=True), migrations_applied=True, schema_version="1.0.0")
    attach_module(tenant, make_module("billing"), is_enabled=False)
    runner, server = FakeMigrationRunner(), FakeDatabaseServer()

    result = await apply_pending_migrations(_repo(tenant), tenant.id, runner=runner, server=server)

    assert result.success is True
    assert result.results == []
    assert result.message == "No pending migrations"
    assert runner.calls == []
    assert server.calls == []


@pytest.mark.asyncio
async def test_apply_runs_stages_in_order(database_project: Path, workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    core = attach_module(tenant, make_module("core", is_core=True, version="2.1.0"))
    chat = attach_module(tenant, make_module("internal_chat"))
    _write_sql(database_project, "internal_chat", "002_b.sql", "001_a.sql")
    messaging = attach_module(
        tenant, make_module("messaging", is_custom=True, module_path="pax-messaging-service")
    )
    migrations_dir = _custom_project(workspace_root, "pax-messaging-service")
    runner, server = FakeMigrationRunner(), FakeDatabaseServer()
    repo = _repo(tenant)

    result = await apply_migrations(repo, tenant.id, runner=runner, server=server)

    assert result.success is True
    assert [r.module for r in result.results] == [STANDARD_LABEL, "core", "internal_chat", "messaging"]
    assert result.message == "Migrations applied: 4 succeeded, 0 failed"
    assert [call[0].resolve() for call in runner.calls] == [database_project.resolve(), migrations_dir.resolve()]
    assert server.sql_runs[0][1] == ["001_a.sql", "002_b.sql"]
    assert _by_module(result.results)["internal_chat"].message == "Files applied: 001_a.sql, 002_b.sql"
    assert _by_module(result.results)["core"].message == "Covered by standard migrations"
    assert core.migrations_applied and core.schema_version == "2.1.0"
    assert chat.migrations_applied and messaging.migrations_applied
    # Every run targets the tenant database, never the registry.
    assert all(call[1].endswith("@db.internal:5433/acme_erp") for call in runner.calls)


@pytest.mark.asyncio
async def test_custom_module_without_descriptor_fails_alone(workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    core = attach_module(tenant, make_module("core", is_core=True))
    broken = attach_module(tenant, make_module("reports", is_custom=True, module_path="pax-reports"))
    (workspace_root / "pax-reports").mkdir()
    runner = FakeMigrationRunner()

    result = await apply_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())

    results = _by_module(result.results)
    assert result.success is False
    assert results[STANDARD_LABEL].success is True
    assert results["core"].success is True
    assert results["reports"].success is False
    assert results["reports"].type == "custom"
    assert "alembic/alembic.ini" in results["reports"].message
    assert core.migrations_applied is True
    assert broken.migrations_applied is False
    assert len(runner.calls) == 1


@pytest.mark.asyncio
async def test_custom_module_folder_missing(workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("reports", is_custom=True, module_path="pax-reports"))

    result = await apply_migrations(
        _repo(tenant), tenant.id, runner=FakeMigrationRunner(), server=FakeDatabaseServer()
    )

    assert _by_module(result.results)["reports"].message.startswith("Module folder not found")


@pytest.mark.asyncio
async def test_custom_migrations_path_override(workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(
        tenant,
        make_module("reports", is_custom=True, module_path="pax-reports", migrations_path="db/migrations"),
    )
    migrations_dir = _custom_project(workspace_root, "pax-reports", "db/migrations")
    runner = FakeMigrationRunner()

    result = await apply_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())

    assert result.success is True
    assert runner.calls[-1][0].resolve() == migrations_dir.resolve()


@pytest.mark.asyncio
async def test_custom_module_without_path_is_skipped() -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("reports", is_custom=True))
    runner = FakeMigrationRunner()

    result = await apply_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())

    assert [r.module for r in result.results] == [STANDARD_LABEL]
    assert len(runner.calls) == 1


@pytest.mark.asyncio
async def test_standard_chain_failure_does_not_stop_other_stages(
    database_project: Path, workspace_root: Path
) -> None:
    tenant = make_tenant("acme", provisioned=True)
    core = attach_module(tenant, make_module("core", is_core=True))
    attach_module(tenant, make_module("internal_chat"))
    _write_sql(database_project, "internal_chat", "001_a.sql")
    attach_module(tenant, make_module("messaging", is_custom=True, module_path="pax-messaging"))
    _custom_project(workspace_root, "pax-messaging")
    runner = FakeMigrationRunner()
    runner.failures[database_project.resolve()] = ExternalOperationError("Migration", "relation already exists")

    result = await apply_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())

    results = _by_module(result.results)
    assert result.success is False
    assert result.message == "Migrations applied: 2 succeeded, 2 failed"
    assert results[STANDARD_LABEL].success is False
    assert results["core"].success is False
    assert results["core"].message == "Migration failed: relation already exists"
    assert results["internal_chat"].success is True
    assert results["messaging"].success is True
    assert core.migrations_applied is False


@pytest.mark.asyncio
async def test_module_sql_failure_is_recorded(database_project: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    chat = attach_module(tenant, make_module("internal_chat"))
    _write_sql(database_project, "internal_chat", "001_a.sql")
    server = FakeDatabaseServer()
    server.failures["run_sql_files"] = OSError("syntax error at or near")

    result = await apply_migrations(_repo(tenant), tenant.id, runner=FakeMigrationRunner(), server=server)

    failed = _by_module(result.results)["internal_chat"]
    assert failed.success is False
    assert failed.message == "Module SQL migration failed: syntax error at or near"
    assert chat.migrations_applied is False


@pytest.mark.asyncio
async def test_timeout_is_reported_per_module(workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("reports", is_custom=True, module_path="pax-reports"))
    migrations_dir = _custom_project(workspace_root, "pax-reports")
    runner = FakeMigrationRunner()
    runner.failures[migrations_dir.resolve()] = MigrationTimeoutError("Migration", "timed out after 120s")

    result = await apply_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())

    assert _by_module(result.results)["reports"].message == "Migration failed: timed out after 120s"
    assert result.success is False


@pytest.mark.asyncio
async def test_disabled_modules_are_ignored(workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("reports", is_custom=True, module_path="pax-reports"), is_enabled=False)
    runner = FakeMigrationRunner()

    result = await apply_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())

    assert [r.module for r in result.results] == [STANDARD_LABEL]


@pytest.mark.asyncio
async def test_apply_requires_provisioned_tenant() -> None:
    tenant = make_tenant("acme")
    runner = FakeMigrationRunner()
    with pytest.raises(NotProvisionedError):
        await apply_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())
    with pytest.raises(NotFoundError):
        await apply_migrations(_repo(), "missing", runner=runner, server=FakeDatabaseServer())
    assert runner.calls == []


@pytest.mark.asyncio
async def test_pending_skips_chain_when_only_sql_modules_pending(database_project: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("core", is_core=True), migrations_applied=True, schema_version="1.0.0")
    chat = attach_module(tenant, make_module("internal_chat"))
    _write_sql(database_project, "internal_chat", "001_a.sql")
    runner, server = FakeMigrationRunner(), FakeDatabaseServer()

    result = await apply_pending_migrations(_repo(tenant), tenant.id, runner=runner, server=server)

    assert result.success is True
    assert [r.module for r in result.results] == ["internal_chat"]
    assert result.message == "Pending migrations applied: 1 succeeded, 0 failed"
    assert runner.calls == []
    assert chat.migrations_applied is True


@pytest.mark.asyncio
async def test_pending_runs_chain_for_modules_without_sql() -> None:
    tenant = make_tenant("acme", provisioned=True)
    core = attach_module(tenant, make_module("core", is_core=True))
    runner = FakeMigrationRunner()

    result = await apply_pending_migrations(_repo(tenant), tenant.id, runner=runner, server=FakeDatabaseServer())

    assert [r.module for r in result.results] == [STANDARD_LABEL, "core"]
    assert core.migrations_applied is True


@pytest.mark.asyncio
async def test_concurrent_runs_for_one_tenant_are_serialized() -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("core", is_core=True))

    class SlowRunner(FakeMigrationRunner):
        def __init__(self) -> None:
            super().__init__()
            self.active = 0
            self.max_active = 0

        async def migrate_latest(self, project_dir: Path, connection_string: str) -> str:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return await super().migrate_latest(project_dir, connection_string)

    runner = SlowRunner()
    repo = _repo(tenant)
    await asyncio.gather(
        apply_migrations(repo, tenant.id, runner=runner, server=FakeDatabaseServer()),
        apply_migrations(repo, tenant.id, runner=runner, server=FakeDatabaseServer()),
    )

    assert len(runner.calls) == 2
    assert runner.max_active == 1


@pytest.mark.asyncio
async def test_single_module_requires_association() -> None:
    tenant = make_tenant("acme", provisioned=True)
    with pytest.raises(NotFoundError):
        await apply_module_migrations(_repo(tenant), tenant.id, "missing", runner=FakeMigrationRunner())


@pytest.mark.asyncio
async def test_single_module_must_be_enabled() -> None:
    tenant = make_tenant("acme", provisioned=True)
    tm = attach_module(tenant, make_module("billing"), is_enabled=False)
    with pytest.raises(ValidationError):
        await apply_module_migrations(_repo(tenant), tenant.id, tm.module_id, runner=FakeMigrationRunner())


@pytest.mark.asyncio
async def test_single_custom_module_without_descriptor(workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    tm = attach_module(tenant, make_module("reports", is_custom=True, module_path="pax-reports"))
    (workspace_root / "pax-reports").mkdir()
    runner = FakeMigrationRunner()

    with pytest.raises(ValidationError, match="Schema descriptor not found"):
        await apply_module_migrations(_repo(tenant), tenant.id, tm.module_id, runner=runner)
    assert runner.calls == []
    assert tm.migrations_applied is False


@pytest.mark.asyncio
async def test_single_custom_module_success(workspace_root: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    tm = attach_module(tenant, make_module("reports", is_custom=True, module_path="pax-reports", version="3.0.0"))
    _custom_project(workspace_root, "pax-reports")

    result = await apply_module_migrations(_repo(tenant), tenant.id, tm.module_id, runner=FakeMigrationRunner())

    assert result.success is True
    assert result.type == "custom"
    assert tm.migrations_applied is True
    assert tm.schema_version == "3.0.0"


@pytest.mark.asyncio
async def test_single_standard_module_prefers_sql(database_project: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    tm = attach_module(tenant, make_module("internal_chat"))
    _write_sql(database_project, "internal_chat", "001_a.sql")
    runner, server = FakeMigrationRunner(), FakeDatabaseServer()

    result = await apply_module_migrations(
        _repo(tenant), tenant.id, tm.module_id, runner=runner, server=server
    )

    assert result.message == "Files applied: 001_a.sql"
    assert runner.calls == []
    assert tm.migrations_applied is True


@pytest.mark.asyncio
async def test_single_standard_module_falls_back_to_chain(database_project: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    tm = attach_module(tenant, make_module("core", is_core=True))
    runner = FakeMigrationRunner()

    result = await apply_module_migrations(
        _repo(tenant), tenant.id, tm.module_id, runner=runner, server=FakeDatabaseServer()
    )

    assert result.type == "standard"
    assert runner.calls[0][0] == database_project.resolve()


@pytest.mark.asyncio
async def test_single_module_failure_raises_and_leaves_flag(database_project: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    tm = attach_module(tenant, make_module("core", is_core=True))
    runner = FakeMigrationRunner()
    runner.failures[database_project.resolve()] = ExternalOperationError("Migration", "boom")

    with pytest.raises(ExternalOperationError):
        await apply_module_migrations(_repo(tenant), tenant.id, tm.module_id, runner=runner)
    assert tm.migrations_applied is False


@pytest.mark.asyncio
async def test_status_of_unprovisioned_tenant() -> None:
    tenant = make_tenant("acme")
    attach_module(tenant, make_module("core", is_core=True))

    status = await get_migrations_status(_repo(tenant), tenant.id)

    assert status == {
        "provisioned": False,
        "migrations_applied": False,
        "pending_migrations_count": 0,
        "modules": [],
    }


@pytest.mark.asyncio
async def test_status_reports_pending_and_drift() -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("core", is_core=True, version="1.1.0"), migrations_applied=True, schema_version="1.0.0")
    attach_module(tenant, make_module("internal_chat"))
    attach_module(tenant, make_module("billing"), is_enabled=False)

    status = await get_migrations_status(_repo(tenant), tenant.id)

    modules = {entry["module_code"]: entry for entry in status["modules"]}
    assert status["provisioned"] is True
    assert status["migrations_applied"] is True
    assert status["pending_migrations_count"] == 1
    assert modules["core"]["version_drift"] is True
    assert modules["core"]["needs_migration"] is False
    assert modules["internal_chat"]["needs_migration"] is True
    assert modules["billing"]["needs_migration"] is False


@pytest.mark.asyncio
async def test_status_unknown_tenant() -> None:
    with pytest.raises(NotFoundError):
        await get_migrations_status(_repo(), "missing")


@pytest.mark.asyncio
async def test_undecodable_script_fails_only_its_module(monkeypatch, database_project: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    broken = attach_module(tenant, make_module("aaa_chat"))
    healthy = attach_module(tenant, make_module("bbb_chat"))
    broken_dir = _write_sql(database_project, "aaa_chat")
    (broken_dir / "001_latin1.sql").write_bytes(b"\xff\xfeSELECT 1;\n")
    _write_sql(database_project, "bbb_chat", "001_a.sql")
    connector = RecordingConnector()
    monkeypatch.setattr(database_server, "short_lived_connection", connector)

    result = await apply_migrations(_repo(tenant), tenant.id, runner=FakeMigrationRunner(), server=PostgresServer())

    results = _by_module(result.results)
    assert results["aaa_chat"].success is False
    assert results["aaa_chat"].message.startswith("Module SQL migration failed: ")
    assert results["bbb_chat"].success is True
    assert broken.migrations_applied is False
    assert healthy.migrations_applied is True
    assert result.message == "Migrations applied: 2 succeeded, 1 failed"


@pytest.mark.asyncio
async def test_undecodable_script_on_single_module_is_external(monkeypatch, database_project: Path) -> None:
    tenant = make_tenant("acme", provisioned=True)
    module = make_module("aaa_chat")
    attach_module(tenant, module)
    (_write_sql(database_project, "aaa_chat") / "001_latin1.sql").write_bytes(b"\xff\xfe")
    monkeypatch.setattr(database_server, "short_lived_connection", RecordingConnector())

    with pytest.raises(ExternalOperationError, match="^Module SQL migration failed"):
        await apply_module_migrations(_repo(tenant), tenant.id, module.id, server=PostgresServer())


@pytest.mark.asyncio
async def test_tenant_locks_are_released_after_a_pass() -> None:
    tenant = make_tenant("acme", provisioned=True)
    attach_module(tenant, make_module("core", is_core=True))

    await apply_migrations(_repo(tenant), tenant.id, runner=FakeMigrationRunner(), server=FakeDatabaseServer())
    gc.collect()

    assert tenant.id not in migrations._tenant_locks
