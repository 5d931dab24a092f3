import sys
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the `leadfinder` package is importable when running pytest from the worker directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from leadfinder.core import config  # noqa: E402
from leadfinder.core.errors import ProviderError, StorageError  # noqa: E402
from leadfinder.core.models import (  # noqa: E402
    COMPLETED,
    FAILED,
    RUNNING,
    TERMINAL_STATUSES,
    VERIFIED_CONFIDENCE,
    Business,
    BusinessCandidate,
)


class FakeStore:
    """In-memory stand-in for ``leadfinder.core.db`` with the same guards as its SQL."""

    def __init__(self):
        self.lock = threading.Lock()
        self.jobs = {}
        self.businesses = []
        self.updated_at = {}
        self.progress_log = []
        self.progress_requests = []
        self.failures = {}
        self.reads = 0
        self._next_id = 1

    def fail_next(self, operation, times=1):
        self.failures[operation] = times

    def _maybe_fail(self, operation):
        remaining = self.failures.get(operation, 0)
        if remaining:
            self.failures[operation] = remaining - 1
            raise StorageError(operation, "connection reset")

    def _touch(self, job_id):
        self.updated_at[job_id] = datetime.now(timezone.utc)

    # ---------- Jobs ----------

    def create_job(self, job):
        self._maybe_fail("create_job")
        with self.lock:
            self.jobs[job.id] = replace(job, created_at=datetime.now(timezone.utc))
            self._touch(job.id)

    def get_job(self, job_id):
        self._maybe_fail("get_job")
        with self.lock:
            self.reads += 1
            job = self.jobs.get(job_id)
            return replace(job) if job else None

    def update_job_status(self, job_id, status, progress, message):
        self._maybe_fail("update_job_status")
        with self.lock:
            job = self.jobs.get(job_id)
            if job is None or job.status in (COMPLETED, "cancelled"):
                return False
            if job.status == FAILED and status != RUNNING:
                return False
            job.status = status
            job.progress = max(job.progress, progress)
            job.message = message
            if status in TERMINAL_STATUSES:
                job.completed_at = datetime.now(timezone.utc)
            self.progress_log.append((job_id, job.progress))
            self._touch(job_id)
            return True

    def update_job_progress(self, job_id, progress, message):
        self._maybe_fail("update_job_progress")
        with self.lock:
            self.progress_requests.append((job_id, progress))
            job = self.jobs.get(job_id)
            if job is None or job.status != RUNNING:
                return False
            job.progress = max(job.progress, progress)
            if message is not None:
                job.message = message
            self.progress_log.append((job_id, job.progress))
            self._touch(job_id)
            return True

    def find_stale_jobs(self, older_than_minutes):
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        with self.lock:
            return [
                replace(job)
                for job_id, job in self.jobs.items()
                if job.status in ("pending", RUNNING) and self.updated_at[job_id] < cutoff
            ]

    # ---------- Businesses ----------

    def add_business(self, job_id, candidate):
        self._maybe_fail("add_business")
        with self.lock:
            key = candidate.name.lower()
            if any(b.job_id == job_id and b.name.lower() == key for b in self.businesses):
                return None
            business = Business(
                id=self._next_id,
                job_id=job_id,
                name=candidate.name,
                source=candidate.source,
                website=candidate.website,
                phone=candidate.phone,
                address=candidate.address,
                rating=candidate.rating,
                review_count=candidate.review_count,
                employee_count=candidate.employee_count,
                industry_code=candidate.industry_code,
                is_b2b=candidate.is_b2b,
                email=candidate.email,
                email_source=candidate.email_source,
                email_confidence=candidate.email_confidence,
                years_in_business=candidate.years_in_business,
                instagram=candidate.instagram,
                created_at=datetime.now(timezone.utc),
            )
            self._next_id += 1
            self.businesses.append(business)
            return business.id

    def get_businesses(self, job_id):
        self._maybe_fail("get_businesses")
        with self.lock:
            rows = [replace(b) for b in self.businesses if b.job_id == job_id]
            return sorted(rows, key=lambda b: (-b.email_confidence, b.id))

    def get_businesses_since(self, job_id, last_id=0):
        self._maybe_fail("get_businesses_since")
        with self.lock:
            rows = [replace(b) for b in self.businesses if b.job_id == job_id and b.id > last_id]
            return sorted(rows, key=lambda b: b.id)

    def get_business_count(self, job_id):
        with self.lock:
            return sum(1 for b in self.businesses if b.job_id == job_id)

    def get_email_stats(self, job_id):
        with self.lock:
            rows = [b for b in self.businesses if b.job_id == job_id]
            return {
                "total": len(rows),
                "with_email": sum(1 for b in rows if b.email),
                "verified": sum(1 for b in rows if b.email and b.email_confidence >= VERIFIED_CONFIDENCE),
            }

    def update_business_email(self, business_id, email, email_source, email_confidence):
        self._maybe_fail("update_business_email")
        with self.lock:
            for business in self.businesses:
                if business.id == business_id:
                    if business.email and business.email_confidence >= email_confidence:
                        return False
                    business.email = email
                    business.email_source = email_source
                    business.email_confidence = email_confidence
                    return True
            return False

    def ping(self):
        return True


class FakeProvider:
    """Listing source returning canned candidates, or raising a canned error."""

    def __init__(self, name, candidates=None, *, error=None, is_api=True, priority=1, cost=0.0, results_per_call=20):
        self.name = name
        self.candidates = list(candidates or [])
        self.error = error
        self.is_api = is_api
        self.priority = priority
        self.cost_per_call_usd = cost
        self.results_per_call = results_per_call
        self.data_age_days = 0
        self.calls = []

    def fetch_listings(self, query, location, limit):
        self.calls.append((query, location, limit))
        if self.error is not None:
            raise self.error
        return [replace(candidate) for candidate in self.candidates[:limit]]


class NoEmailDiscovery:
    """Email discovery double that never finds anything."""

    def __init__(self):
        self.batches = []

    def discover_batch(self, businesses, concurrency=3, on_result=None, token=None):
        self.batches.append(list(businesses))
        results = []
        for business in businesses:
            if token is not None and token.cancelled:
                break
            results.append((business, None))
            if on_result is not None:
                on_result(business, None)
        if token is not None:
            token.checkpoint()
        return results


def make_candidates(prefix, count, *, source="fake", website=True, start=1):
    return [
        BusinessCandidate(
            name=f"{prefix} {index}",
            website=f"https://{prefix.lower().replace(' ', '')}{index}.com" if website else None,
            phone=f"+1512555{index:04d}",
            address=f"{index} Congress Ave, Austin, TX 78701",
            rating=4.0,
            review_count=10 + index,
            source=source,
            state="TX",
        )
        for index in range(start, start + count)
    ]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def clear_settings_cache():
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


__all__ = ["FakeStore", "FakeProvider", "NoEmailDiscovery", "make_candidates", "ProviderError"]
