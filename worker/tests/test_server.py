import pytest

from leadfinder.core.cache import MemoryCacheBackend, SearchCache
from leadfinder.core.config import Settings
from leadfinder.core.orchestrator import SourceOrchestrator
from leadfinder.core.quota import QuotaRegistry
from leadfinder.jobs import server
from leadfinder.jobs.events import JOB_CANCEL, JOB_CREATED
from leadfinder.jobs.lifecycle import JobManager
from leadfinder.jobs.worker import JobWorker

from conftest import FakeProvider, NoEmailDiscovery, make_candidates


class DummyBus:
    def __init__(self):
        self.emitted = []

    def subscribe(self, event, handler, background=True, on_exhausted=None):
        pass

    def emit(self, event, payload):
        self.emitted.append((event, payload))
        return []


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def services(store, monkeypatch):
    settings = Settings(database_url="postgresql://localhost/test", stream_poll_interval=0)
    registry = QuotaRegistry()
    registry.register("google_places", ["key"], 10, results_per_call=20)
    provider = FakeProvider("google_places", make_candidates("Dentist", 5, source="google_places"))
    orchestrator = SourceOrchestrator([provider], registry, prefer_apis=True)
    bus = DummyBus()
    manager = JobManager(store, bus)
    cache = SearchCache(MemoryCacheBackend(), popularity_threshold=1)
    worker = JobWorker(manager, orchestrator, NoEmailDiscovery(), cache=cache, fanout=1)
    cache.runner = worker.search
    built = server.Services(
        settings=settings,
        registry=registry,
        orchestrator=orchestrator,
        cache=cache,
        bus=bus,
        manager=manager,
        worker=worker,
        throttle=server.RequestThrottle(3, clock=FakeClock()),
        store=store,
    )
    monkeypatch.setattr(server, "_services", built)
    monkeypatch.setattr(server, "get_settings", lambda: settings)
    return built


@pytest.fixture
def client(services):
    return server.app.test_client()


def test_health_endpoint(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"
    assert response.get_json()["worker_port_config"] == 9000


def test_create_job_accepts_and_emits(client, services, store):
    response = client.post(
        "/jobs",
        json={"query": "dentists", "location": "Austin, TX", "count": 9000, "priority": "HIGH", "targetState": "tx"},
    )

    assert response.status_code == 202
    body = response.get_json()
    job = store.jobs[body["jobId"]]
    assert body["priority"] == "high"
    assert job.status == "pending"
    assert job.target_count == 500
    assert job.targeting.target_state == "TX"
    assert services.bus.emitted == [(JOB_CREATED, {"jobId": body["jobId"]})]


def test_create_job_validates_payload(client, services, store):
    services.throttle.per_minute = 0
    assert client.post("/jobs", json={}).status_code == 400
    assert client.post("/jobs", data="not json", content_type="text/plain").status_code == 400
    assert client.post("/jobs", json={"query": "<script>alert(1)</script>"}).status_code == 400
    assert client.post("/jobs", json={"query": "dentists", "count": "lots"}).status_code == 400
    bad_sizes = {"query": "dentists", "companySizeMin": 50, "companySizeMax": 10}
    response = client.post("/jobs", json=bad_sizes)

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"
    assert store.jobs == {}


def test_create_job_is_throttled_per_client(client, services):
    payload = {"query": "dentists", "location": "Austin, TX"}
    for _ in range(3):
        assert client.post("/jobs", json=payload).status_code == 202

    response = client.post("/jobs", json=payload)
    other = client.post("/jobs", json=payload, headers={"X-Forwarded-For": "203.0.113.9"})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "61"
    assert response.get_json()["error"] == "rate_limit_exceeded"
    assert other.status_code == 202


def test_throttle_forgets_clients_after_the_window():
    clock = FakeClock()
    throttle = server.RequestThrottle(3, clock=clock)
    for index in range(200):
        throttle.check(f"198.51.100.{index}")

    clock.now += 61
    throttle.check("203.0.113.9")

    assert list(throttle._hits) == ["203.0.113.9"]


def test_cancel_job(client, services, store):
    job_id = services.manager.create_job("dentists", "Austin, TX", 5)

    assert client.delete("/jobs").status_code == 400
    response = client.delete(f"/jobs?jobId={job_id}")

    assert response.status_code == 202
    assert response.get_json() == {"jobId": job_id, "message": "Cancellation requested"}
    assert services.bus.emitted[-1] == (JOB_CANCEL, {"jobId": job_id, "reason": "Cancelled by user"})


def test_job_status_unknown_job(client):
    response = client.get("/jobs/job_1_missing")

    assert response.status_code == 404
    assert response.get_json()["error"] == "job_not_found"


def test_job_status_pending_has_no_results(client, services):
    job_id = services.manager.create_job("dentists", "Austin, TX", 5)

    body = client.get(f"/jobs/{job_id}").get_json()

    assert body["status"] == "pending"
    assert body["currentCount"] == 0
    assert "results" not in body


def test_job_status_completed_includes_results(client, services):
    job_id = services.manager.create_job("dentists", "Austin, TX", 5)
    services.worker.process_job(job_id)

    body = client.get(f"/jobs/{job_id}").get_json()

    assert body["status"] == "completed"
    assert body["progress"] == 100
    assert body["currentCount"] == 5
    assert body["results"]["total"] == 5
    assert body["results"]["withEmail"] == 0
    assert len(body["results"]["businesses"]) == 5
    assert body["completedAt"] is not None


def test_stream_finished_job(client, services):
    job_id = services.manager.create_job("dentists", "Austin, TX", 5)
    services.worker.process_job(job_id)

    response = client.get(f"/jobs/{job_id}/stream")
    text = response.get_data(as_text=True)

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    assert text.startswith("event: status\n")
    assert "event: done\n" in text


def test_stream_unknown_job_is_404(client):
    assert client.get("/jobs/job_1_missing/stream").status_code == 404


def test_search_cache_lookup(client, services):
    miss = client.get("/search-cache", query_string={"query": "dentists", "location": "Austin, TX"}).get_json()
    services.cache.store("dentists", "Austin, TX", [{"name": "Smile Dental"}])
    hit = client.get("/search-cache", query_string={"query": "dentists", "location": "Austin, TX"}).get_json()

    assert miss["cached"] is False
    assert hit["cached"] is True
    assert hit["results"] == [{"name": "Smile Dental"}]
    assert client.get("/search-cache").status_code == 400


def test_cache_health_and_actions(client):
    assert client.get("/cache").get_json()["backend"] == "memory"

    warm = client.post("/cache", json={"action": "warm", "maxQueries": 1})
    assert warm.status_code == 200
    assert warm.get_json()["action"] == "warm"
    assert warm.get_json()["stored"] == 1

    maintain = client.post("/cache", json={"action": "maintain"})
    assert maintain.status_code == 200
    assert maintain.get_json()["evicted"] == 0

    assert client.post("/cache", json={"action": "flush"}).status_code == 400
    assert client.post("/cache", json={"action": "warm", "maxQueries": 0}).status_code == 400


def test_api_status(client):
    response = client.get("/api-status?count=100")
    body = response.get_json()

    assert response.status_code == 200
    assert body["preferApis"] is True
    assert body["providers"][0]["name"] == "google_places"
    assert body["fulfillment"]["canFulfill"] is True
    assert client.get("/api-status?count=many").status_code == 400


def test_unexpected_errors_return_500(client, services, monkeypatch):
    def explode(job_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(services.manager, "get_job", explode)

    response = client.get("/jobs/job_1_abc")

    assert response.status_code == 500
    assert response.get_json()["error"] == "internal_error"
