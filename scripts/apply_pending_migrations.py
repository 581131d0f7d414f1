from __future__ import annotations

import argparse
import asyncio
import logging

from paxadmin.core.errors import PaxAdminError
from paxadmin.core.logging import configure_logging
from paxadmin.persistence.db import SessionLocal
from paxadmin.persistence.repos.tenants import SqlTenantRepository, TenantRepository
from paxadmin.services.database_server import DatabaseServer
from paxadmin.services.migrations import MigrationRunner, apply_pending_migrations


logger = logging.getLogger("paxadmin.scripts.apply_pending_migrations")


async def run_pending(
    repo: TenantRepository,
    tenant_code: str | None = None,
    *,
    runner: MigrationRunner | None = None,
    server: DatabaseServer | None = None,
) -> int:
    # One tenant failing must not stop the rest; the exit code reports it.
    if tenant_code:
        tenant = await repo.get_by_code(tenant_code)
        if tenant is None:
            print(f"tenant={tenant_code} error=not_found")
            return 1
        tenants = [tenant]
    else:
        tenants = await repo.list_provisioned()

    failures = 0
    for tenant in tenants:
        try:
            result = await apply_pending_migrations(repo, tenant.id, runner=runner, server=server)
        except PaxAdminError as exc:
            failures += 1
            logger.warning("pending_migrations_failed tenant=%s code=%s", tenant.code, exc.code)
            print(f"tenant={tenant.code} success=false error={exc.message}")
            continue
        if not result.success:
            failures += 1
        print(f"tenant={tenant.code} success={str(result.success).lower()} message={result.message}")
        for item in result.results:
            if not item.success:
                print(f"  module={item.module} type={item.type} error={item.message}")
    logger.info("pending_migrations_run tenants=%s failures=%s", len(tenants), failures)
    return 1 if failures else 0


async def _run(tenant_code: str | None) -> int:
    async with SessionLocal() as session:
        return await run_pending(SqlTenantRepository(session), tenant_code)


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply pending module migrations to provisioned tenants")
    parser.add_argument("--tenant", default=None, help="tenant code; defaults to every provisioned tenant")
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_run(args.tenant)))


if __name__ == "__main__":
    main()
