from __future__ import annotations

import argparse
import asyncio
import sys

from registrycore.core.logging import configure_logging
from registrycore.persistence.db import SessionLocal
from registrycore.services.audit import get_audit_chain


async def verify(tenant_ids: list[str | None]) -> int:
    # Exit non-zero when any lineage has a broken link so cron can alert on it.
    chain = get_audit_chain()
    failures = 0
    async with SessionLocal() as session:
        for tenant_id in tenant_ids:
            report = await chain.verify(session, tenant_id=tenant_id)
            lineage = tenant_id or "global"
            print(
                f"lineage={lineage} checked={report.checked} unchained={report.unchained} "
                f"violations={len(report.violations)} head={report.head_hash}"
            )
            for violation in report.violations:
                print(f"  entry_id={violation.entry_id} seq={violation.chain_seq} reason={violation.reason}")
            if not report.ok:
                failures += 1
    return 1 if failures else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute audit hash chains and report broken links")
    parser.add_argument("--tenant-id", action="append", default=[], help="repeat for several tenants")
    parser.add_argument("--global", dest="include_global", action="store_true", help="verify the tenant-less lineage")
    args = parser.parse_args()
    tenant_ids: list[str | None] = list(args.tenant_id)
    if args.include_global:
        tenant_ids.append(None)
    if not tenant_ids:
        parser.error("pass --tenant-id and/or --global")
    configure_logging()
    sys.exit(asyncio.run(verify(tenant_ids)))


if __name__ == "__main__":
    main()
