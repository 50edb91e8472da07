"""
Daily late-fee accrual over every active, not fully paid fee record.

Safe to re-run: accrued late fees never decrease, so a second run for the same date changes nothing.
Records that fail are logged and picked up by the next run.
Usage: python -m app.scripts.recompute_late_fees [--as-of 2025-04-22] [--tenant-id <uuid>]
"""

import argparse
import asyncio
import sys
from datetime import date
from typing import List, Optional
from uuid import UUID

from app.api.v1.fees.service import recompute_late_fees
from app.db.session import AsyncSessionLocal
from app.main import configure_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute late fees for overdue installments.")
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Accrual date (default: today)")
    parser.add_argument("--tenant-id", type=UUID, default=None, help="Limit the run to one tenant")
    return parser.parse_args(argv)


async def run(as_of: Optional[date], tenant_id: Optional[UUID]) -> int:
    async with AsyncSessionLocal() as session:
        result = await recompute_late_fees(session, as_of=as_of, tenant_id=tenant_id)
    print(f"As of {result.as_of}: processed {result.processed}, updated {result.updated}, failed {len(result.failed)}")
    for record_id in result.failed:
        print(f"  FAILED: fee record {record_id}", file=sys.stderr)
    return 1 if result.failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    return asyncio.run(run(args.as_of, args.tenant_id))


if __name__ == "__main__":
    sys.exit(main())
