from __future__ import annotations

import argparse
import asyncio

from registrycore.core.logging import configure_logging
from registrycore.persistence.db import SessionLocal
from registrycore.services.idempotency import IdempotencyGuard


async def prune(ttl_hours: int | None) -> None:
    # Remove expired idempotency records to keep storage bounded.
    guard = IdempotencyGuard(ttl_hours=ttl_hours)
    async with SessionLocal() as session:
        deleted = await guard.prune_expired(session)
        print(f"pruned_idempotency_records={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete idempotency records older than the TTL")
    parser.add_argument("--ttl-hours", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(prune(args.ttl_hours))


if __name__ == "__main__":
    main()
