from __future__ import annotations

from pathlib import Path

import pytest

from paxadmin.core.config import get_settings


TEST_SERVICE_KEY = "test-service-key"
# 256-bit hex key; tests never talk to a real server so any fixed key works.
TEST_CREDENTIALS_KEY = "11" * 32


@pytest.fixture(autouse=True)
def paxadmin_settings(monkeypatch, tmp_path: Path):
    # Point every filesystem setting at a per-test sandbox.
    workspace = tmp_path / "workspace"
    database_project = tmp_path / "pax-database"
    workspace.mkdir()
    database_project.mkdir()
    (database_project / "alembic.ini").write_text("[alembic]\n", encoding="utf-8")
    monkeypatch.setenv("CREDENTIALS_ENCRYPTION_KEY", TEST_CREDENTIALS_KEY)
    monkeypatch.setenv("WORKSPACE_ROOT", str(workspace))
    monkeypatch.setenv("DATABASE_PROJECT_PATH", str(database_project))
    monkeypatch.setenv("SERVICE_AUTH_ENABLED", "true")
    monkeypatch.setenv("SERVICE_KEY", TEST_SERVICE_KEY)
    monkeypatch.setenv("DB_ADMIN_HOST", "db.internal")
    monkeypatch.setenv("DB_ADMIN_PORT", "5433")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def workspace_root(paxadmin_settings) -> Path:
    return Path(paxadmin_settings.workspace_root)


@pytest.fixture
def database_project(paxadmin_settings) -> Path:
    return Path(paxadmin_settings.database_project_path)
