"""Job lifecycle: creation, validated status transitions and cancellation."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from leadfinder.core import db
from leadfinder.core.cancellation import CancellationRegistry, CancellationToken
from leadfinder.core.errors import JobNotFoundError
from leadfinder.core.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    RUNNING,
    TRANSITIONS,
    B2BTargeting,
    Job,
)
from leadfinder.core.validation import (
    generate_job_id,
    is_job_id,
    validate_count,
    validate_location,
    validate_priority,
    validate_query,
)
from leadfinder.jobs.events import JOB_CANCEL, JOB_CREATED, EventBus

logger = logging.getLogger(__name__)

QUEUED_MESSAGE = "Queued..."


class JobManager:
    """Owns every status write for a job.

    ``store`` is any object exposing the ``leadfinder.core.db`` job and
    business functions; the module itself is the production store.
    """

    def __init__(
        self,
        store: Any = db,
        bus: Optional[EventBus] = None,
        cancellations: Optional[CancellationRegistry] = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.cancellations = cancellations or CancellationRegistry()
        self._lock = threading.Lock()
        self._high_water: Dict[str, int] = {}
        if bus is not None:
            bus.subscribe(JOB_CANCEL, self.handle_cancel, background=False)

    def create_job(
        self,
        query: Any,
        location: Any = None,
        target_count: Any = None,
        priority: Any = None,
        targeting: Optional[B2BTargeting] = None,
    ) -> str:
        job = Job(
            id=generate_job_id(),
            query=validate_query(query),
            location=validate_location(location),
            target_count=validate_count(target_count),
            priority=validate_priority(priority),
            status=PENDING,
            progress=0,
            message=QUEUED_MESSAGE,
            targeting=targeting or B2BTargeting(),
        )
        self.store.create_job(job)
        logger.info("Created job %s for %r in %r (target=%d)", job.id, job.query, job.location, job.target_count)
        if self.bus is not None:
            self.bus.emit(JOB_CREATED, {"jobId": job.id})
        return job.id

    def get_job(self, job_id: str) -> Job:
        if not is_job_id(job_id):
            raise JobNotFoundError(str(job_id))
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def token_for(self, job_id: str) -> CancellationToken:
        return self.cancellations.token_for(job_id)

    def _transition(self, job_id: str, status: str, progress: int, message: Optional[str]) -> bool:
        job = self.get_job(job_id)
        if status not in TRANSITIONS[job.status]:
            logger.warning("Ignoring %s -> %s for job %s", job.status, status, job_id)
            return False
        if not self.store.update_job_status(job_id, status, progress, message):
            logger.warning("Store rejected %s -> %s for job %s", job.status, status, job_id)
            return False
        with self._lock:
            if status == RUNNING:
                self._high_water[job_id] = max(self._high_water.get(job_id, 0), progress)
            else:
                self._high_water.pop(job_id, None)
        logger.info("Job %s: %s -> %s (%s)", job_id, job.status, status, message)
        return True

    def start(self, job_id: str, message: str = "Starting search...") -> bool:
        job = self.get_job(job_id)
        return self._transition(job_id, RUNNING, max(job.progress, 1), message)

    def update_progress(self, job_id: str, progress: int, message: Optional[str] = None) -> int:
        """Record progress; returns the value actually kept, which never goes backwards."""
        with self._lock:
            kept = max(self._high_water.get(job_id, 0), max(0, min(100, int(progress))))
            self._high_water[job_id] = kept
        if not self.store.update_job_progress(job_id, kept, message):
            logger.debug("Progress update for %s ignored; job is no longer running", job_id)
        return kept

    def complete(self, job_id: str, message: str) -> bool:
        return self._transition(job_id, COMPLETED, 100, message)

    def fail(self, job_id: str, message: str) -> bool:
        job = self.get_job(job_id)
        return self._transition(job_id, FAILED, job.progress, message)

    def mark_cancelled(self, job_id: str, message: str = "Cancelled by user") -> bool:
        job = self.get_job(job_id)
        return self._transition(job_id, CANCELLED, job.progress, message)

    def cancel_job(self, job_id: str, reason: Optional[str] = None) -> Dict[str, str]:
        """Request cancellation; acceptance does not mean the job has stopped."""
        payload = {"jobId": job_id, "reason": reason or "Cancelled by user"}
        if self.bus is not None:
            self.bus.emit(JOB_CANCEL, payload)
        else:
            self.handle_cancel(payload)
        return {"jobId": job_id, "message": "Cancellation requested"}

    def handle_cancel(self, payload: Dict[str, Any]) -> None:
        job_id = payload["jobId"]
        reason = payload.get("reason") or "Cancelled by user"
        job = self.store.get_job(job_id) if is_job_id(job_id) else None
        if job is None or job.status not in (PENDING, RUNNING):
            logger.info("Ignoring cancel for %s (%s)", job_id, job.status if job else "unknown job")
            return
        self.cancellations.cancel(job_id, reason)
        if job.status == PENDING and self.mark_cancelled(job_id, reason):
            self.release(job_id)
            return
        # The worker may have finished between the read and the cancel.
        current = self.store.get_job(job_id)
        if current is None or current.is_terminal:
            self.release(job_id)

    def release(self, job_id: str) -> None:
        self.cancellations.release(job_id)
        with self._lock:
            self._high_water.pop(job_id, None)
