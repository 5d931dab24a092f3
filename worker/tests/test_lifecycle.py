import pytest

from leadfinder.core.errors import InvalidQueryError, JobNotFoundError
from leadfinder.core.models import B2BTargeting
from leadfinder.jobs.events import JOB_CANCEL, JOB_CREATED
from leadfinder.jobs.lifecycle import QUEUED_MESSAGE, JobManager


class RecordingBus:
    def __init__(self):
        self.emitted = []
        self.subscriptions = []

    def subscribe(self, event, handler, background=True, on_exhausted=None):
        self.subscriptions.append((event, handler, background))

    def emit(self, event, payload):
        self.emitted.append((event, payload))
        for subscribed, handler, _ in self.subscriptions:
            if subscribed == event:
                handler(payload)
        return []


def test_create_job_persists_pending_and_emits(store):
    bus = RecordingBus()
    manager = JobManager(store, bus)
    targeting = B2BTargeting(target_state="TX")

    job_id = manager.create_job(" dentists ", "Austin, TX", 9000, "HIGH", targeting)

    job = store.jobs[job_id]
    assert job_id.startswith("job_")
    assert job.status == "pending"
    assert job.progress == 0
    assert job.message == QUEUED_MESSAGE
    assert job.query == "dentists"
    assert job.target_count == 500
    assert job.priority == "high"
    assert job.targeting.target_state == "TX"
    assert bus.emitted == [(JOB_CREATED, {"jobId": job_id})]
    assert bus.subscriptions[0][0] == JOB_CANCEL
    assert bus.subscriptions[0][2] is False


def test_create_job_rejects_invalid_query(store):
    with pytest.raises(InvalidQueryError):
        JobManager(store).create_job("<script>alert(1)</script>", "Austin, TX", 5)
    assert store.jobs == {}


def test_get_job_unknown_ids(store):
    manager = JobManager(store)

    with pytest.raises(JobNotFoundError):
        manager.get_job("job_123_missing")
    with pytest.raises(JobNotFoundError):
        manager.get_job("not-a-job-id")


def test_status_walks_forward_and_never_leaves_terminal(store):
    manager = JobManager(store)
    job_id = manager.create_job("dentists", "Austin, TX", 5)

    assert manager.start(job_id) is True
    assert manager.complete(job_id, "Found 5 businesses") is True
    assert manager.fail(job_id, "late failure") is False
    assert manager.start(job_id) is False
    assert store.jobs[job_id].status == "completed"
    assert store.jobs[job_id].progress == 100


def test_failed_job_may_restart(store):
    manager = JobManager(store)
    job_id = manager.create_job("dentists", "Austin, TX", 5)
    manager.start(job_id)
    manager.update_progress(job_id, 40)
    manager.fail(job_id, "storage unavailable")

    assert manager.start(job_id) is True
    job = store.jobs[job_id]
    assert job.status == "running"
    assert job.progress == 40


def test_progress_never_regresses(store):
    manager = JobManager(store)
    job_id = manager.create_job("dentists", "Austin, TX", 5)
    manager.start(job_id)

    kept = [manager.update_progress(job_id, value) for value in (10, 30, 20, 150)]

    assert kept == [10, 30, 30, 100]
    history = [progress for logged_id, progress in store.progress_log if logged_id == job_id]
    assert history == sorted(history)


def test_progress_ignored_once_terminal(store):
    manager = JobManager(store)
    job_id = manager.create_job("dentists", "Austin, TX", 5)
    manager.start(job_id)
    manager.mark_cancelled(job_id)

    manager.update_progress(job_id, 80, "late write")

    assert store.jobs[job_id].status == "cancelled"
    assert store.jobs[job_id].message == "Cancelled by user"


def test_cancel_pending_job_finalizes_immediately(store):
    bus = RecordingBus()
    manager = JobManager(store, bus)
    job_id = manager.create_job("dentists", "Austin, TX", 5)

    response = manager.cancel_job(job_id, "changed my mind")

    assert response == {"jobId": job_id, "message": "Cancellation requested"}
    assert store.jobs[job_id].status == "cancelled"
    assert store.jobs[job_id].message == "changed my mind"
    assert (JOB_CANCEL, {"jobId": job_id, "reason": "changed my mind"}) in bus.emitted


def test_cancel_running_job_only_signals_token(store):
    manager = JobManager(store)
    job_id = manager.create_job("dentists", "Austin, TX", 5)
    manager.start(job_id)
    token = manager.token_for(job_id)

    manager.cancel_job(job_id)

    assert token.cancelled is True
    assert store.jobs[job_id].status == "running"


def test_cancel_unknown_job_is_accepted(store):
    manager = JobManager(store)

    assert manager.cancel_job("job_1_nothing")["message"] == "Cancellation requested"


def test_cancels_for_unknown_or_finished_jobs_keep_no_tokens(store):
    manager = JobManager(store)
    finished = manager.create_job("dentists", "Austin, TX", 5)
    manager.start(finished)
    manager.complete(finished, "Found 5 businesses (0 with email)")

    for index in range(1000):
        manager.cancel_job(f"bogus-{index}")
        manager.cancel_job(f"job_{index}_missing")
    manager.cancel_job(finished)

    assert len(manager.cancellations) == 0
    assert store.jobs[finished].status == "completed"


def test_cancel_pending_job_releases_its_token(store):
    manager = JobManager(store)
    job_id = manager.create_job("dentists", "Austin, TX", 5)

    manager.cancel_job(job_id)

    assert store.jobs[job_id].status == "cancelled"
    assert len(manager.cancellations) == 0
