from __future__ import annotations

import asyncio

from paxadmin.core.logging import configure_logging
from paxadmin.persistence.db import SessionLocal
from paxadmin.persistence.repos.modules import SqlModuleRepository
from paxadmin.services.modules import seed_modules


async def _run() -> None:
    async with SessionLocal() as session:
        modules = await seed_modules(SqlModuleRepository(session))
        for module in modules:
            print(f"module={module.code} core={str(module.is_core).lower()} custom={str(module.is_custom).lower()}")


def main() -> None:
    # Idempotent; safe to run on every deploy.
    configure_logging()
    asyncio.run(_run())


if __name__ == "__main__":
    main()
