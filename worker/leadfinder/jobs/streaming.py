"""Server-sent event stream of a job's status and newly persisted businesses."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from leadfinder.core.errors import StorageError
from leadfinder.core.models import Business, Job

logger = logging.getLogger(__name__)

STATUS = "status"
BUSINESSES = "businesses"
DONE = "done"
ERROR = "error"


def sse_frame(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _status_payload(job: Job) -> Dict[str, Any]:
    return {"status": job.status, "progress": job.progress, "message": job.message}


def _businesses_payload(businesses: List[Business]) -> Dict[str, Any]:
    return {"businesses": [business.to_dict() for business in businesses]}


def stream_job(
    job_id: str,
    store: Any,
    poll_interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[str]:
    """Yield SSE frames until the job reaches a terminal state.

    Each subscriber gets its own loop. Closing the generator (client
    disconnect) ends the loop at its next yield, so no further store reads
    happen after the client has gone.
    """
    job: Optional[Job] = store.get_job(job_id)
    if job is None:
        yield sse_frame(ERROR, {"error": "job_not_found", "message": f"Job not found: {job_id}"})
        return

    businesses = store.get_businesses_since(job_id, 0)
    last_id = max((business.id for business in businesses), default=0)
    total = len(businesses)
    last_status = _status_payload(job)
    yield sse_frame(STATUS, last_status)
    yield sse_frame(BUSINESSES, _businesses_payload(businesses))

    try:
        while not job.is_terminal:
            sleep(poll_interval)
            try:
                polled = store.get_job(job_id)
                fresh = store.get_businesses_since(job_id, last_id)
            except StorageError as exc:
                logger.warning("Stream poll for %s failed: %s", job_id, exc)
                continue
            if polled is None:
                yield sse_frame(ERROR, {"error": "job_not_found", "message": f"Job not found: {job_id}"})
                return
            job = polled

            status = _status_payload(job)
            if status != last_status:
                last_status = status
                yield sse_frame(STATUS, status)
            if fresh:
                last_id = max(business.id for business in fresh)
                total += len(fresh)
                yield sse_frame(BUSINESSES, _businesses_payload(fresh))

        yield sse_frame(DONE, {"status": job.status, "message": job.message, "total": total})
    except GeneratorExit:
        logger.info("Stream subscriber for %s disconnected", job_id)
        raise
