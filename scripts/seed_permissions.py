from __future__ import annotations

import argparse
import asyncio

from registrycore.core.logging import configure_logging
from registrycore.domain.models import Base
from registrycore.persistence.db import SessionLocal, engine
from registrycore.services.authz.catalog import seed_default_catalog


async def seed(create_schema: bool) -> None:
    # Load the default permission catalog; reruns only add what is missing.
    if create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    async with SessionLocal() as session:
        added = await seed_default_catalog(session)
        print(f"role_permissions_added={added}")
    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed default permissions and role grants")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="create missing tables first (local databases only)",
    )
    args = parser.parse_args()
    configure_logging()
    asyncio.run(seed(args.create_schema))


if __name__ == "__main__":
    main()
