"""Mark jobs that stopped reporting progress as failed.

A worker that dies mid-run, or that could not even record its own failure,
leaves the job ``running`` forever. Run this periodically (cron, Cloud
Scheduler) to close those jobs out.
"""

import argparse
import logging
import sys

from leadfinder.core import db
from leadfinder.core.errors import StorageError
from leadfinder.jobs.lifecycle import JobManager

logger = logging.getLogger("sweep_stale_jobs")


def sweep(older_than_minutes: int, dry_run: bool = False, store=db) -> int:
    manager = JobManager(store)
    swept = 0
    for job in store.find_stale_jobs(older_than_minutes):
        logger.info("Job %s %s since before the cutoff (progress=%d)", job.id, job.status, job.progress)
        if dry_run:
            continue
        message = f"Search timed out: no progress for {older_than_minutes} minutes"
        if manager.fail(job.id, message):
            swept += 1
    return swept


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = argparse.ArgumentParser(description="Fail jobs with no progress updates")
    parser.add_argument("--minutes", type=int, default=30, help="Minutes without an update before a job is stale")
    parser.add_argument("--dry-run", action="store_true", help="Only list stale jobs")
    args = parser.parse_args()

    try:
        swept = sweep(args.minutes, dry_run=args.dry_run)
    except StorageError as exc:
        logger.error("Sweep aborted: %s", exc)
        return 1
    logger.info("Marked %d stale job(s) as failed", swept)
    return 0


if __name__ == "__main__":
    sys.exit(main())
