from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Protocol, Sequence

import asyncpg
from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine
from sqlalchemy.pool import NullPool

from paxadmin.core.config import get_settings


logger = logging.getLogger(__name__)

# Errors raised by the server adapter that callers translate into ExternalOperationError.
SERVER_ERRORS: tuple[type[BaseException], ...] = (
    SQLAlchemyError,
    asyncpg.PostgresError,
    OSError,
    asyncio.TimeoutError,
)


class DatabaseServer(Protocol):
    # Server-level operations on the shared database server hosting tenant databases.
    async def role_exists(self, role: str) -> bool:
        ...

    async def create_role(self, role: str, password: str) -> None:
        ...

    async def set_role_password(self, role: str, password: str) -> None:
        ...

    async def database_exists(self, database: str) -> bool:
        ...

    async def create_database(self, database: str, owner: str) -> None:
        ...

    async def grant_privileges(self, database: str, role: str) -> None:
        ...

    async def terminate_sessions(self, database: str) -> None:
        ...

    async def drop_database(self, database: str) -> None:
        ...

    async def drop_role(self, role: str) -> None:
        ...

    async def ping(self, url: str, *, timeout_s: float) -> None:
        ...

    async def run_sql_files(self, url: str, files: Sequence[Path]) -> list[str]:
        ...


def quote_ident(name: str) -> str:
    # Role and database names cannot be bound parameters in DDL.
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def to_async_url(url: str | URL) -> URL:
    # Accept plain postgresql:// URLs handed to clients and run them through asyncpg.
    parsed = make_url(url) if isinstance(url, str) else url
    if parsed.drivername in {"postgresql", "postgres"}:
        parsed = parsed.set(drivername="postgresql+asyncpg")
    return parsed


def admin_url(database: str | None = None) -> URL:
    settings = get_settings()
    return URL.create(
        "postgresql+asyncpg",
        username=settings.db_admin_user,
        password=settings.db_admin_pass,
        host=settings.db_admin_host,
        port=int(settings.db_admin_port),
        database=database or settings.db_admin_database,
    )


@asynccontextmanager
async def short_lived_connection(
    url: str | URL, *, timeout_s: float | None = None
) -> AsyncIterator[AsyncConnection]:
    # One connection per unit of work; DDL such as CREATE DATABASE needs autocommit.
    connect_args = {"timeout": timeout_s} if timeout_s else {}
    engine = create_async_engine(
        to_async_url(url),
        poolclass=NullPool,
        isolation_level="AUTOCOMMIT",
        connect_args=connect_args,
    )
    try:
        async with engine.connect() as conn:
            yield conn
    finally:
        try:
            await engine.dispose()
        except Exception as exc:
            # Never mask the original failure with a close error.
            logger.warning("database_connection_close_failed", exc_info=exc)


class PostgresServer:
    async def role_exists(self, role: str) -> bool:
        async with short_lived_connection(admin_url()) as conn:
            result = await conn.execute(text("SELECT 1 FROM pg_roles WHERE rolname = :role"), {"role": role})
            return result.first() is not None

    async def create_role(self, role: str, password: str) -> None:
        async with short_lived_connection(admin_url()) as conn:
            await conn.execute(text(f"CREATE ROLE {quote_ident(role)} WITH LOGIN PASSWORD {quote_literal(password)}"))
        logger.info("tenant_role_created role=%s", role)

    async def set_role_password(self, role: str, password: str) -> None:
        async with short_lived_connection(admin_url()) as conn:
            await conn.execute(text(f"ALTER ROLE {quote_ident(role)} WITH LOGIN PASSWORD {quote_literal(password)}"))
        logger.info("tenant_role_password_reset role=%s", role)

    async def database_exists(self, database: str) -> bool:
        async with short_lived_connection(admin_url()) as conn:
            result = await conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :database"), {"database": database}
            )
            return result.first() is not None

    async def create_database(self, database: str, owner: str) -> None:
        async with short_lived_connection(admin_url()) as conn:
            await conn.execute(text(f"CREATE DATABASE {quote_ident(database)} OWNER {quote_ident(owner)}"))
        logger.info("tenant_database_created database=%s owner=%s", database, owner)

    async def grant_privileges(self, database: str, role: str) -> None:
        # Default privileges only apply to the database they are issued in.
        grantee = quote_ident(role)
        statements = [
            f"GRANT ALL ON SCHEMA public TO {grantee}",
            f"GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA public TO {grantee}",
            f"GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA public TO {grantee}",
            f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON TABLES TO {grantee}",
            f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON SEQUENCES TO {grantee}",
        ]
        async with short_lived_connection(admin_url(database)) as conn:
            for statement in statements:
                await conn.execute(text(statement))
        logger.info("tenant_privileges_granted database=%s role=%s", database, role)

    async def terminate_sessions(self, database: str) -> None:
        async with short_lived_connection(admin_url()) as conn:
            await conn.execute(
                text(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = :database AND pid <> pg_backend_pid()"
                ),
                {"database": database},
            )

    async def drop_database(self, database: str) -> None:
        async with short_lived_connection(admin_url()) as conn:
            await conn.execute(text(f"DROP DATABASE {quote_ident(database)}"))
        logger.info("tenant_database_dropped database=%s", database)

    async def drop_role(self, role: str) -> None:
        async with short_lived_connection(admin_url()) as conn:
            await conn.execute(text(f"DROP ROLE {quote_ident(role)}"))
        logger.info("tenant_role_dropped role=%s", role)

    async def ping(self, url: str, *, timeout_s: float) -> None:
        async with short_lived_connection(url, timeout_s=timeout_s) as conn:
            await conn.execute(text("SELECT 1"))

    async def run_sql_files(self, url: str, files: Sequence[Path]) -> list[str]:
        executed: list[str] = []
        async with short_lived_connection(url) as conn:
            raw = await conn.get_raw_connection()
            # Script files hold several statements; the driver's simple-query path runs them whole.
            driver = raw.driver_connection
            for path in files:
                script = path.read_text(encoding="utf-8")
                await driver.execute(script)
                executed.append(path.name)
                logger.info("module_sql_file_executed file=%s", path.name)
        return executed


def get_database_server() -> DatabaseServer:
    # Allow tests to monkeypatch server access without touching service code.
    return PostgresServer()
