"""CLI job that runs one lead search synchronously and persists the results."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from leadfinder.core import db
from leadfinder.core.cache import SearchCache
from leadfinder.core.config import ConfigError, get_settings
from leadfinder.core.errors import LeadFinderError
from leadfinder.core.models import COMPLETED
from leadfinder.core.orchestrator import build_registry
from leadfinder.core.validation import validate_count, validate_location, validate_query
from leadfinder.jobs.lifecycle import JobManager
from leadfinder.jobs.worker import build_worker

logger = logging.getLogger(__name__)


def run_job(query: str, location: Optional[str], count: int, *, use_cache: bool = True) -> int:
    settings = get_settings()
    query = validate_query(query)
    location = validate_location(location)
    count = validate_count(count)

    cache = SearchCache.from_settings(settings)
    if use_cache:
        lookup = cache.lookup(query, location)
        if lookup.cached:
            logger.info("Cache hit (%ss old); %d business(es)", lookup.age_seconds, len(lookup.businesses))
            print(json.dumps(lookup.to_dict(), indent=2, default=str))
            return 0

    db.init_pool()
    manager = JobManager(db)
    worker = build_worker(settings, manager, build_registry(settings), cache if use_cache else None)
    job_id = manager.create_job(query, location, count)
    logger.info("Running job %s", job_id)

    status = worker.process_job(job_id)
    job = manager.get_job(job_id)
    print(
        json.dumps(
            {
                "jobId": job_id,
                "status": status or job.status,
                "message": job.message,
                "businesses": [business.to_dict() for business in db.get_businesses(job_id)],
            },
            indent=2,
            default=str,
        )
    )
    return 0 if job.status == COMPLETED else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one lead discovery job")
    parser.add_argument("--query", required=True, help="Business type to search, e.g. 'dentists'")
    parser.add_argument("--location", help="City and state, e.g. 'Austin, TX'")
    parser.add_argument("--count", type=int, default=25, help="Number of businesses to collect (1-500)")
    parser.add_argument("--no-cache", dest="use_cache", action="store_false", help="Skip the search cache")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        return run_job(args.query, args.location, args.count, use_cache=args.use_cache)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except LeadFinderError as exc:
        logger.error("%s", exc.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
