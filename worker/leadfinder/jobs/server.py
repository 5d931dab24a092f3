"""HTTP entrypoint for lead discovery jobs."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from flask import Flask, Response, jsonify, request, stream_with_context
from werkzeug.exceptions import HTTPException

from leadfinder.core import db
from leadfinder.core.cache import SearchCache
from leadfinder.core.config import Settings, get_settings
from leadfinder.core.errors import LeadFinderError, RateLimitError, ValidationError
from leadfinder.core.models import COMPLETED, RUNNING
from leadfinder.core.orchestrator import SourceOrchestrator, build_registry
from leadfinder.core.quota import QuotaRegistry
from leadfinder.core.validation import validate_job_request, validate_location, validate_query
from leadfinder.jobs.events import JOB_CREATED, EventBus
from leadfinder.jobs.lifecycle import JobManager
from leadfinder.jobs.streaming import stream_job
from leadfinder.jobs.worker import JobWorker, build_worker

logger = logging.getLogger(__name__)

# ---------- App & executor ----------
app = Flask(__name__)
_executor: Optional[ThreadPoolExecutor] = None

WINDOW_SECONDS = 60.0


class RequestThrottle:
    """Sliding one-minute window of accepted requests per client."""

    def __init__(self, per_minute: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.per_minute = per_minute
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}
        self._last_prune = clock()

    def check(self, client: str) -> None:
        if self.per_minute <= 0:
            return
        now = self._clock()
        with self._lock:
            if now - self._last_prune >= WINDOW_SECONDS:
                self._prune(now)
            hits = self._hits.setdefault(client, deque())
            while hits and now - hits[0] >= WINDOW_SECONDS:
                hits.popleft()
            if len(hits) >= self.per_minute:
                retry_after = max(1, int(WINDOW_SECONDS - (now - hits[0])) + 1)
                raise RateLimitError("Too many job requests. Please wait before starting another search.", retry_after)
            hits.append(now)

    def _prune(self, now: float) -> None:
        expired = [client for client, hits in self._hits.items() if not hits or now - hits[-1] >= WINDOW_SECONDS]
        for client in expired:
            del self._hits[client]
        self._last_prune = now


@dataclass
class Services:
    settings: Settings
    registry: QuotaRegistry
    orchestrator: SourceOrchestrator
    cache: SearchCache
    bus: EventBus
    manager: JobManager
    worker: JobWorker
    throttle: RequestThrottle
    store: Any = db


def build_services(settings: Optional[Settings] = None, store: Any = db) -> Services:
    global _executor
    settings = settings or get_settings()
    registry = build_registry(settings)

    _executor = ThreadPoolExecutor(max_workers=settings.worker_max_jobs, thread_name_prefix="job")
    bus = EventBus(
        max_attempts=settings.job_max_attempts,
        retry_delay=settings.job_retry_delay,
        executor=_executor,
    )
    manager = JobManager(store, bus)
    cache = SearchCache.from_settings(settings)
    worker = build_worker(settings, manager, registry, cache)
    bus.subscribe(JOB_CREATED, worker.handle_created, on_exhausted=worker.handle_exhausted)
    return Services(
        settings=settings,
        registry=registry,
        orchestrator=worker.orchestrator,
        cache=cache,
        bus=bus,
        manager=manager,
        worker=worker,
        throttle=RequestThrottle(settings.jobs_per_minute),
        store=store,
    )


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def _client_id() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or request.remote_addr or "unknown"


# ---------- Error handlers ----------


@app.errorhandler(LeadFinderError)
def handle_leadfinder_error(exc: LeadFinderError) -> Any:
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.kind, exc.message)
    response = jsonify(exc.to_dict())
    response.status_code = exc.status_code
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception) -> Any:
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "internal_error", "message": "An unexpected error occurred"}), 500


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    """Liveness only; reads settings and never touches the database."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": settings.worker_port,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/jobs")
def create_job() -> Any:
    services = get_services()
    services.throttle.check(_client_id())
    query, location, count, priority, targeting = validate_job_request(request.get_json(silent=True))
    job_id = services.manager.create_job(query, location, count, priority, targeting)
    return jsonify({"jobId": job_id, "priority": priority, "message": "Search job created"}), 202


@app.delete("/jobs")
def cancel_job() -> Any:
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    job_id = request.args.get("jobId") or payload.get("jobId")
    if not job_id:
        raise ValidationError("jobId is required")
    return jsonify(get_services().manager.cancel_job(str(job_id), payload.get("reason"))), 202


@app.get("/jobs/<job_id>")
def job_status(job_id: str) -> Any:
    services = get_services()
    job = services.manager.get_job(job_id)
    body: Dict[str, Any] = {
        "id": job.id,
        "status": job.status,
        "progress": job.progress,
        "message": job.message,
        "query": job.query,
        "location": job.location,
        "targetCount": job.target_count,
        "currentCount": services.store.get_business_count(job.id),
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }
    if job.status in (RUNNING, COMPLETED):
        stats = services.store.get_email_stats(job.id)
        body["results"] = {
            "total": stats["total"],
            "withEmail": stats["with_email"],
            "verified": stats["verified"],
            "businesses": [business.to_dict() for business in services.store.get_businesses(job.id)],
        }
    return jsonify(body), 200


@app.get("/jobs/<job_id>/stream")
def job_stream(job_id: str) -> Any:
    services = get_services()
    services.manager.get_job(job_id)
    frames = stream_job(job_id, services.store, poll_interval=services.settings.stream_poll_interval)
    return Response(
        stream_with_context(frames),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@app.get("/search-cache")
def search_cache() -> Any:
    query = validate_query(request.args.get("query"))
    location = validate_location(request.args.get("location"))
    lookup = get_services().cache.lookup(query, location)
    return jsonify(lookup.to_dict()), 200


@app.get("/cache")
def cache_health() -> Any:
    return jsonify(get_services().cache.health()), 200


@app.post("/cache")
def cache_action() -> Any:
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    action = payload.get("action")
    cache = get_services().cache
    if action == "warm":
        max_queries = payload.get("maxQueries", 20)
        if isinstance(max_queries, bool) or not isinstance(max_queries, int) or max_queries < 1:
            raise ValidationError("maxQueries must be a positive integer")
        stats = cache.warm(max_queries=max_queries, force_refresh=bool(payload.get("forceRefresh", False)))
        return jsonify({"action": "warm", **stats.to_dict()}), 200
    if action == "maintain":
        return jsonify({"action": "maintain", **cache.maintain().to_dict()}), 200
    raise ValidationError("action must be 'warm' or 'maintain'")


@app.get("/api-status")
def api_status() -> Any:
    services = get_services()
    raw_count = request.args.get("count", "25")
    try:
        count = max(1, int(raw_count))
    except ValueError as exc:
        raise ValidationError("count must be a whole number") from exc
    return (
        jsonify(
            {
                "preferApis": services.orchestrator.prefer_apis,
                "providers": services.registry.snapshot(),
                "fulfillment": services.orchestrator.can_fulfill(count),
                "usage": services.registry.usage_summary(),
                "savings": services.registry.cost_savings(),
            }
        ),
        200,
    )


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    settings = get_settings()
    get_services()

    port = int(os.getenv("PORT") or settings.worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
