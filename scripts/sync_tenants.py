#!/usr/bin/env python3
"""CLI script to run a full resync for one tenant or for every tenant."""

import argparse
import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from sync_worker.tasks.sync_tenants import run_fleet_sync, run_tenant_sync

logger = structlog.get_logger()


async def main(tenant_id: str | None) -> None:
    """Main sync function."""
    if tenant_id:
        logger.info("Starting tenant sync", tenant_id=tenant_id)
        result = await run_tenant_sync(tenant_id)
        logger.info("Tenant sync completed", **result)
    else:
        logger.info("Starting fleet sync")
        result = await run_fleet_sync()
        logger.info("Fleet sync completed", **result)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--tenant", help="Sync only this tenant id")
    args = parser.parse_args()
    asyncio.run(main(args.tenant))
