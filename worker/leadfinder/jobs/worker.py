"""Runs the discovery pipeline for one job.

Stages and the progress band each one reports in:

* discovery across sources (5-35)
* dedupe and targeting filters (38)
* incremental persistence (40-90)
* email discovery (90-98)
* completion (100)

The cancellation token is checked between source calls, before each insert
and before each email lookup starts. Storage errors propagate so the event bus
can retry the whole run; inserts are idempotent per business name, so a retry
resumes where the previous attempt stopped.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

from leadfinder.core.cache import SearchCache
from leadfinder.core.cancellation import CancellationToken, JobCancelled
from leadfinder.core.config import Settings
from leadfinder.core.email_discovery import EmailDiscovery
from leadfinder.core.errors import error_message
from leadfinder.core.models import CANCELLED, COMPLETED, FAILED, B2BTargeting, Business, BusinessCandidate, EmailResult
from leadfinder.core.orchestrator import SourceOrchestrator, build_orchestrator
from leadfinder.core.quota import QuotaRegistry
from leadfinder.core.rate_limiter import DomainRateLimiter
from leadfinder.etl.dedupe import BusinessAggregator
from leadfinder.jobs.lifecycle import JobManager
from leadfinder.vendors.hunter import HunterClient

logger = logging.getLogger(__name__)

DISCOVERY_START, DISCOVERY_END = 5, 35
FILTERED = 38
PERSIST_START, PERSIST_END = 40, 90
EMAIL_START, EMAIL_END = 90, 98


def _band(start: int, end: int, done: int, total: int) -> int:
    if total <= 0:
        return end
    return start + int((end - start) * min(1.0, done / total))


def matches_targeting(candidate: BusinessCandidate, targeting: B2BTargeting) -> bool:
    """Post-filter for B2B targeting; unknown attributes never exclude a record."""
    if targeting.b2c_only and candidate.is_b2b:
        return False
    if targeting.target_state and candidate.state and candidate.state.upper() != targeting.target_state:
        return False
    if candidate.employee_count is not None:
        if targeting.company_size_min is not None and candidate.employee_count < targeting.company_size_min:
            return False
        if targeting.company_size_max is not None and candidate.employee_count > targeting.company_size_max:
            return False
    return True


def apply_targeting(candidates: List[BusinessCandidate], targeting: B2BTargeting) -> List[BusinessCandidate]:
    kept = [candidate for candidate in candidates if matches_targeting(candidate, targeting)]
    if len(kept) < len(candidates):
        logger.info("Targeting filters dropped %d of %d listing(s)", len(candidates) - len(kept), len(candidates))
    return kept


def _apply_email(candidate: Any, result: EmailResult) -> None:
    candidate.email = result.email
    candidate.email_source = result.source
    candidate.email_confidence = result.confidence


class JobWorker:
    def __init__(
        self,
        manager: JobManager,
        orchestrator: SourceOrchestrator,
        email_discovery: EmailDiscovery,
        *,
        cache: Optional[SearchCache] = None,
        fanout: int = 3,
        fetch_multiplier: float = 1.5,
    ) -> None:
        self.manager = manager
        self.store = manager.store
        self.orchestrator = orchestrator
        self.email_discovery = email_discovery
        self.cache = cache
        self.fanout = max(1, fanout)
        self.fetch_multiplier = max(1.0, fetch_multiplier)

    # ---------- Event bus hooks ----------

    def handle_created(self, payload: Dict[str, Any]) -> None:
        self.process_job(payload["jobId"])

    def handle_exhausted(self, payload: Dict[str, Any], exc: BaseException) -> None:
        job_id = payload["jobId"]
        try:
            self.manager.fail(job_id, f"Search failed: {error_message(exc)}")
        finally:
            self.manager.release(job_id)

    # ---------- Pipeline ----------

    def _discover(
        self, job_id: str, query: str, location: Optional[str], wanted: int, token: Optional[CancellationToken]
    ) -> BusinessAggregator:
        aggregator = BusinessAggregator(job_id)

        def on_progress(source: str, found: int, target: int) -> None:
            self.manager.update_progress(
                job_id,
                _band(DISCOVERY_START, DISCOVERY_END, found, target),
                f"Found {found} businesses ({source})",
            )

        self.orchestrator.discover(query, location, wanted, aggregator, token, on_progress)
        stats = aggregator.stats
        logger.info(
            "Job %s aggregation: %d added, %d replaced, %d discarded",
            job_id,
            stats.added,
            stats.replaced,
            stats.discarded,
        )
        return aggregator

    def _persist(self, job_id: str, candidates: List[BusinessCandidate], room: int, token: CancellationToken) -> int:
        inserted = 0
        for index, candidate in enumerate(candidates):
            if inserted >= room:
                break
            token.checkpoint()
            if self.store.add_business(job_id, candidate) is not None:
                inserted += 1
            self.manager.update_progress(
                job_id,
                _band(PERSIST_START, PERSIST_END, index + 1, min(len(candidates), room)),
                f"Saved {inserted} of {room} businesses",
            )
        return inserted

    def _find_emails(self, job_id: str, token: CancellationToken) -> None:
        missing = [business for business in self.store.get_businesses(job_id) if not business.email and business.website]
        if not missing:
            return
        done = 0

        def on_result(business: Business, result: Optional[EmailResult]) -> None:
            nonlocal done
            done += 1
            if result is not None:
                self.store.update_business_email(business.id, result.email, result.source, result.confidence)
            self.manager.update_progress(
                job_id,
                _band(EMAIL_START, EMAIL_END, done, len(missing)),
                f"Finding emails ({done}/{len(missing)})",
            )

        self.manager.update_progress(job_id, EMAIL_START, f"Finding emails for {len(missing)} businesses")
        self.email_discovery.discover_batch(missing, self.fanout, on_result, token)

    def process_job(self, job_id: str) -> Optional[str]:
        """Run one job to a terminal state; returns the final status, or None if skipped."""
        job = self.manager.get_job(job_id)
        if job.is_terminal and job.status != FAILED:
            logger.warning("Job %s already %s; not running it again", job_id, job.status)
            return None

        token = self.manager.token_for(job_id)
        if token.cancelled:
            self.manager.mark_cancelled(job_id, token.reason or "Cancelled by user")
            self.manager.release(job_id)
            return CANCELLED
        if not self.manager.start(job_id):
            self.manager.release(job_id)
            return None

        try:
            self.manager.update_progress(job_id, DISCOVERY_START, "Searching sources...")
            wanted = math.ceil(job.target_count * self.fetch_multiplier)
            aggregator = self._discover(job_id, job.query, job.location, wanted, token)
            token.checkpoint()

            candidates = apply_targeting(aggregator.ranked(), job.targeting)
            self.manager.update_progress(job_id, FILTERED, f"Found {len(candidates)} unique businesses")

            room = max(0, job.target_count - self.store.get_business_count(job_id))
            self._persist(job_id, candidates, room, token)
            self.manager.update_progress(job_id, PERSIST_END, "Saved businesses")

            self._find_emails(job_id, token)
            token.checkpoint()

            stats = self.store.get_email_stats(job_id)
            if stats["total"] < job.target_count:
                message = f"Found {stats['total']} of {job.target_count} requested businesses ({stats['with_email']} with email)"
            else:
                message = f"Found {stats['total']} businesses ({stats['with_email']} with email)"
            self.manager.complete(job_id, message)
        except JobCancelled as exc:
            logger.info("Job %s cancelled: %s", job_id, exc.reason)
            self.manager.mark_cancelled(job_id, exc.reason or "Cancelled by user")
            self.manager.release(job_id)
            return CANCELLED

        self.manager.release(job_id)
        self._cache_results(job)
        return COMPLETED

    def _cache_results(self, job: Any) -> None:
        if self.cache is None:
            return
        businesses = [business.to_dict() for business in self.store.get_businesses(job.id)]
        self.cache.store(job.query, job.location, businesses)

    def search(self, query: str, location: Optional[str], count: int) -> List[Dict[str, Any]]:
        """Run discovery and email lookup without a job; used to warm the cache."""
        aggregator = BusinessAggregator()
        self.orchestrator.discover(query, location, math.ceil(count * self.fetch_multiplier), aggregator)
        candidates = aggregator.ranked()[:count]

        def on_result(candidate: BusinessCandidate, result: Optional[EmailResult]) -> None:
            if result is not None:
                _apply_email(candidate, result)

        self.email_discovery.discover_batch(
            [candidate for candidate in candidates if candidate.website and not candidate.email],
            self.fanout,
            on_result,
        )
        rows = []
        for candidate in candidates:
            row = candidate.to_row("")
            row.pop("job_id")
            rows.append(row)
        return rows


def build_worker(
    settings: Settings,
    manager: JobManager,
    registry: QuotaRegistry,
    cache: Optional[SearchCache] = None,
) -> JobWorker:
    """Wire providers, scraper and email discovery from settings."""
    rate_limiter = DomainRateLimiter.from_settings(settings)
    email_discovery = EmailDiscovery(
        hunter=HunterClient(settings.hunter_api_key, registry) if settings.hunter_api_key else None,
        rate_limiter=rate_limiter,
        cache_backend=cache.backend if cache is not None else None,
        use_js_renderer=settings.enrich_use_js_renderer,
        default_region=settings.default_phone_region,
    )
    worker = JobWorker(
        manager,
        build_orchestrator(settings, registry, rate_limiter),
        email_discovery,
        cache=cache,
        fanout=settings.worker_fanout,
        fetch_multiplier=settings.fetch_multiplier,
    )
    if cache is not None and cache.runner is None:
        cache.runner = worker.search
    return worker
