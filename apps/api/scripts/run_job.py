"""
Run a Billing Job Once

Runs one billing job outside the scheduler and prints its result as JSON.
Useful for backfills and for checking a job against a staging database.

Usage:
    cd apps/api
    python scripts/run_job.py mark-overdue
    python scripts/run_job.py --list
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add the src directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from app.core.config import settings
from app.core.cora import close_cora_client
from app.core.database import close_db
from app.core.nfse import close_nfse_client
from app.modules.billing.jobs import get_billing_job, get_billing_jobs


async def run_job(name: str) -> int:
    """Run the named job and print its result. Returns the exit code."""
    job = get_billing_job(name)
    if job is None:
        print(f"Unknown job: {name}")
        print(f"Available jobs: {', '.join(j.name for j in get_billing_jobs())}")
        return 2

    try:
        result = await job.func()
    except Exception as e:
        print(f"Job {name} failed: {e}")
        return 1
    finally:
        await close_cora_client()
        await close_nfse_client()
        await close_db()

    print(result.model_dump_json(indent=2))
    return 0 if not result.errors else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a billing job once")
    parser.add_argument("job", nargs="?", help="Job name, e.g. mark-overdue")
    parser.add_argument("--list", action="store_true", help="List the available jobs")
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper())

    if args.list or not args.job:
        for job in get_billing_jobs():
            print(f"{job.name:25} {job.cron}")
        return 0

    return asyncio.run(run_job(args.job))


if __name__ == "__main__":
    sys.exit(main())
