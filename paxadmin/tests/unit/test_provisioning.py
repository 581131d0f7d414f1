from __future__ import annotations

from urllib.parse import unquote, urlsplit

import pytest

from paxadmin.core.config import get_settings
from paxadmin.core.errors import (
    ConfigurationError,
    ConflictError,
    ExternalOperationError,
    NotFoundError,
    ValidationError,
)
from paxadmin.services.crypto.credentials import decrypt_secret
from paxadmin.services.provisioning import (
    PASSWORD_ALPHABET,
    check_health,
    database_names_for,
    deprovision_tenant,
    generate_password,
    provision_tenant,
)
from paxadmin.tests.utils.fakes import (
    FakeDatabaseServer,
    InMemoryModuleRepository,
    InMemoryTenantRepository,
    attach_module,
    make_module,
    make_tenant,
)


def _repo(*tenants) -> InMemoryTenantRepository:
    return InMemoryTenantRepository(InMemoryModuleRepository(), tenants)


def test_generate_password_shape() -> None:
    password = generate_password()
    assert len(password) == 24
    assert set(password) <= set(PASSWORD_ALPHABET)


def test_database_names_replace_hyphens() -> None:
    assert database_names_for("acme-north") == ("acme_north_erp", "user_acme_north")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code",
    ["", "-acme", "acme_corp", "acme corp", "a" * 64, 'acme";drop', "acmé"],
)
async def test_unsafe_codes_rejected_before_any_connection(code: str) -> None:
    tenant = make_tenant(code="placeholder")
    tenant.code = code
    server = FakeDatabaseServer()
    with pytest.raises(ValidationError):
        await provision_tenant(_repo(tenant), tenant.id, server=server)
    assert server.calls == []
    assert tenant.is_provisioned is False


@pytest.mark.asyncio
async def test_provision_creates_role_database_and_stores_credentials() -> None:
    tenant = make_tenant("acme-north")
    repo = _repo(tenant)
    server = FakeDatabaseServer()

    result = await provision_tenant(repo, tenant.id, server=server)

    assert tenant.is_provisioned is True
    assert tenant.provisioned_at is not None
    assert tenant.database_name == "acme_north_erp"
    assert tenant.database_user == "user_acme_north"
    assert tenant.database_host == "db.internal"
    assert tenant.database_port == 5433
    assert tenant.database_pass.startswith("v1:")
    assert server.databases == {"acme_north_erp": "user_acme_north"}
    assert server.grants == [("acme_north_erp", "user_acme_north")]

    parts = urlsplit(result.connection_string)
    assert parts.username == "user_acme_north"
    assert parts.path == "/acme_north_erp"
    assert parts.port == 5433
    stored_password = decrypt_secret(tenant.database_pass)
    assert unquote(parts.password) == stored_password
    assert server.roles["user_acme_north"] == stored_password
    assert repo.commits == 1


@pytest.mark.asyncio
async def test_provision_twice_is_a_conflict() -> None:
    tenant = make_tenant("acme")
    repo = _repo(tenant)
    server = FakeDatabaseServer()
    await provision_tenant(repo, tenant.id, server=server)
    calls_after_first = list(server.calls)

    with pytest.raises(ConflictError):
        await provision_tenant(repo, tenant.id, server=server)
    assert server.calls == calls_after_first


@pytest.mark.asyncio
async def test_provision_resumes_after_partial_failure() -> None:
    tenant = make_tenant("acme")
    server = FakeDatabaseServer()
    server.roles["user_acme"] = "stale-password"
    server.databases["acme_erp"] = "user_acme"

    await provision_tenant(_repo(tenant), tenant.id, server=server)

    assert "create_role" not in server.calls
    assert "create_database" not in server.calls
    assert "set_role_password" in server.calls
    assert server.roles["user_acme"] == decrypt_secret(tenant.database_pass)


@pytest.mark.asyncio
async def test_provision_wraps_server_failures() -> None:
    tenant = make_tenant("acme")
    server = FakeDatabaseServer()
    server.failures["create_database"] = OSError("connection refused")

    with pytest.raises(ExternalOperationError) as excinfo:
        await provision_tenant(_repo(tenant), tenant.id, server=server)

    assert excinfo.value.message == "Provisioning failed: connection refused"
    assert tenant.is_provisioned is False
    assert tenant.database_pass is None


@pytest.mark.asyncio
async def test_provision_without_encryption_key_touches_nothing(monkeypatch) -> None:
    monkeypatch.delenv("CREDENTIALS_ENCRYPTION_KEY", raising=False)
    get_settings.cache_clear()
    tenant = make_tenant("acme")
    server = FakeDatabaseServer()

    with pytest.raises(ConfigurationError):
        await provision_tenant(_repo(tenant), tenant.id, server=server)
    assert server.calls == []


@pytest.mark.asyncio
async def test_provision_unknown_tenant() -> None:
    with pytest.raises(NotFoundError):
        await provision_tenant(_repo(), "missing", server=FakeDatabaseServer())


@pytest.mark.asyncio
async def test_deprovision_never_provisioned_skips_server() -> None:
    tenant = make_tenant("acme")
    server = FakeDatabaseServer()

    result = await deprovision_tenant(_repo(tenant), tenant.id, server=server)

    assert result.success is True
    assert result.database_dropped is False
    assert result.user_dropped is False
    assert server.calls == []


@pytest.mark.asyncio
async def test_deprovision_drops_everything_and_resets_tenant() -> None:
    tenant = make_tenant("acme", provisioned=True)
    tenant_module = attach_module(tenant, make_module("core", is_core=True), migrations_applied=True, schema_version="1.0.0")
    server = FakeDatabaseServer()
    server.roles["user_acme"] = "pw"
    server.databases["acme_erp"] = "user_acme"

    result = await deprovision_tenant(_repo(tenant), tenant.id, server=server)

    assert result.database_dropped is True
    assert result.user_dropped is True
    assert server.calls[0] == "terminate_sessions"
    assert server.databases == {}
    assert server.roles == {}
    assert tenant.is_provisioned is False
    assert tenant.database_name is None
    assert tenant.database_user is None
    assert tenant.database_pass is None
    assert tenant_module.migrations_applied is False
    assert tenant_module.schema_version is None


@pytest.mark.asyncio
async def test_deprovision_tolerates_missing_database() -> None:
    tenant = make_tenant("acme", provisioned=True)
    server = FakeDatabaseServer()
    server.roles["user_acme"] = "pw"

    result = await deprovision_tenant(_repo(tenant), tenant.id, server=server)

    assert result.database_dropped is False
    assert result.user_dropped is True
    assert "drop_database" not in server.calls


@pytest.mark.asyncio
async def test_deprovision_then_provision_again() -> None:
    tenant = make_tenant("acme")
    repo = _repo(tenant)
    server = FakeDatabaseServer()
    await provision_tenant(repo, tenant.id, server=server)
    await deprovision_tenant(repo, tenant.id, server=server)

    result = await provision_tenant(repo, tenant.id, server=server)

    assert tenant.is_provisioned is True
    assert result.database_name == "acme_erp"


@pytest.mark.asyncio
async def test_deprovision_failure_is_not_rolled_back() -> None:
    tenant = make_tenant("acme", provisioned=True)
    server = FakeDatabaseServer()
    server.databases["acme_erp"] = "user_acme"
    server.failures["drop_database"] = OSError("database is being accessed by other users")

    with pytest.raises(ExternalOperationError, match="^Deprovisioning failed"):
        await deprovision_tenant(_repo(tenant), tenant.id, server=server)
    assert tenant.is_provisioned is True
    assert "drop_role" not in server.calls


@pytest.mark.asyncio
async def test_deprovision_with_incomplete_credentials() -> None:
    tenant = make_tenant("acme", provisioned=True)
    tenant.database_user = None
    server = FakeDatabaseServer()
    with pytest.raises(ValidationError):
        await deprovision_tenant(_repo(tenant), tenant.id, server=server)
    assert server.calls == []


@pytest.mark.asyncio
async def test_health_of_unprovisioned_tenant() -> None:
    tenant = make_tenant("acme")
    server = FakeDatabaseServer()
    result = await check_health(_repo(tenant), "acme", server=server)
    assert result.healthy is False
    assert server.calls == []


@pytest.mark.asyncio
async def test_health_pings_tenant_database_with_short_timeout() -> None:
    tenant = make_tenant("acme", provisioned=True)
    server = FakeDatabaseServer()

    result = await check_health(_repo(tenant), tenant.id, server=server)

    assert result.healthy is True
    url, timeout_s = server.pinged[0]
    assert "user_acme" in url and url.endswith("/acme_erp")
    assert timeout_s == 5.0


@pytest.mark.asyncio
async def test_health_reports_connection_errors_without_raising() -> None:
    tenant = make_tenant("acme", provisioned=True)
    server = FakeDatabaseServer()
    server.failures["ping"] = OSError("timeout expired")

    result = await check_health(_repo(tenant), tenant.id, server=server)

    assert result.healthy is False
    assert result.error == "timeout expired"


@pytest.mark.asyncio
async def test_health_reports_unreadable_credentials(monkeypatch) -> None:
    tenant = make_tenant("acme", provisioned=True)
    monkeypatch.setenv("CREDENTIALS_ENCRYPTION_KEY", "22" * 32)
    get_settings.cache_clear()
    server = FakeDatabaseServer()

    result = await check_health(_repo(tenant), tenant.id, server=server)

    assert result.healthy is False
    assert "cannot be decrypted with the configured key" in result.error
    assert server.calls == []


@pytest.mark.asyncio
async def test_health_unknown_tenant() -> None:
    with pytest.raises(NotFoundError):
        await check_health(_repo(), "nobody", server=FakeDatabaseServer())
