"""
Job queue behaviour with plain function handlers: retries with backoff,
cooperative cancellation and pausing, stall recovery and manual retry.
"""
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from importhub.db.models import BatchImportJob, JobStatus
from importhub.domain.imports.errors import InvalidJobTransition, JobFailed, OrchestrationError
from importhub.domain.imports.progress import ProgressEvent
from importhub.domain.jobs.events import ProgressBroker
from importhub.domain.jobs.queue import JobQueue, _HeldJob
from importhub.domain.jobs.store import JobStore


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def queue(store, settings):
    settings.queue_concurrency = {"import": 1, "batch": 1, "assets": 1, "insights": 1}
    job_queue = JobQueue(store, settings, ProgressBroker())
    yield job_queue
    job_queue.shutdown(wait=True)


def test_submitted_job_completes(queue):
    def handler(context):
        context.progress(ProgressEvent(stage="importing", processed=1, total=2))
        return {"created": 2, "payload": context.payload}

    queue.register("accounts", handler)
    job_id = queue.submit("accounts", "rows", {"skip_duplicates": True})

    job = queue.wait_for(job_id, timeout=10)
    assert job["status"] == JobStatus.COMPLETED.value
    assert job["queue"] == "import"
    assert job["attempts"] == 1
    assert job["progress"] == 100
    assert job["options"] == {"skip_duplicates": True}
    assert job["result"] == {"created": 2, "payload": "rows"}
    assert not queue.is_active(job_id)


def test_unknown_job_type_is_rejected(queue):
    with pytest.raises(OrchestrationError):
        queue.submit("products", b"")


def test_transient_failures_are_retried(queue):
    calls = []

    def flaky(context):
        calls.append(context.attempt)
        if len(calls) < 3:
            raise RuntimeError("database is locked")
        return {"ok": True}

    queue.register("accounts", flaky)
    job = queue.wait_for(queue.submit("accounts", None), timeout=10)

    assert job["status"] == JobStatus.COMPLETED.value
    assert calls == [1, 2, 3]
    assert job["attempts"] == 3


def test_attempt_budget_exhausted(queue):
    def broken(context):
        raise RuntimeError("provider down")

    queue.register("accounts", broken)
    job = queue.wait_for(queue.submit("accounts", None), timeout=10)

    assert job["status"] == JobStatus.FAILED.value
    assert job["attempts"] == 3
    assert job["error_message"] == "provider down"
    assert job["failed_at"] is not None


def test_job_failed_is_not_retried(queue):
    calls = []

    def failing(context):
        calls.append(context.attempt)
        raise JobFailed("batch failed", result={"overall_status": "failed"})

    queue.register("batch", failing)
    job = queue.wait_for(queue.submit("batch", None), timeout=10)

    assert job["status"] == JobStatus.FAILED.value
    assert calls == [1]
    assert job["result"] == {"overall_status": "failed"}


def test_cancel_queued_job(queue):
    release = threading.Event()
    ran = []

    def blocker(context):
        release.wait(5)
        ran.append(context.payload)
        return None

    queue.register("accounts", blocker)
    first = queue.submit("accounts", "first")
    second = queue.submit("accounts", "second")

    cancelled = queue.cancel(second)
    assert cancelled["status"] == JobStatus.CANCELLED.value
    release.set()

    assert queue.wait_for(first, timeout=10)["status"] == JobStatus.COMPLETED.value
    assert queue.wait_for(second, timeout=1)["status"] == JobStatus.CANCELLED.value
    assert ran == ["first"]


def test_cancel_running_job_at_checkpoint(queue):
    started = threading.Event()

    def long_running(context):
        started.set()
        for _ in range(500):
            context.checkpoint()
            time.sleep(0.01)
        return {"finished": True}

    queue.register("accounts", long_running)
    job_id = queue.submit("accounts", None)
    assert started.wait(5)

    response = queue.cancel(job_id)
    assert response["status"] in (JobStatus.RUNNING.value, JobStatus.CANCELLED.value)

    job = queue.wait_for(job_id, timeout=10)
    assert job["status"] == JobStatus.CANCELLED.value
    assert job["result"] is None


def test_cancel_finished_job_is_rejected(queue):
    queue.register("accounts", lambda context: None)
    job_id = queue.submit("accounts", None)
    queue.wait_for(job_id, timeout=10)

    with pytest.raises(InvalidJobTransition):
        queue.cancel(job_id)


def test_pause_and_resume_running_job(queue):
    started = threading.Event()
    release = threading.Event()
    passed_checkpoint = threading.Event()

    def handler(context):
        started.set()
        release.wait(5)
        context.checkpoint()
        passed_checkpoint.set()
        return {"done": True}

    queue.register("accounts", handler)
    job_id = queue.submit("accounts", None)
    assert started.wait(5)

    assert queue.pause(job_id)["status"] == JobStatus.PAUSED.value
    release.set()
    assert not passed_checkpoint.wait(0.3)
    assert queue.store.require_job(job_id)["status"] == JobStatus.PAUSED.value

    assert queue.resume(job_id)["status"] == JobStatus.RUNNING.value
    assert passed_checkpoint.wait(5)
    assert queue.wait_for(job_id, timeout=10)["status"] == JobStatus.COMPLETED.value


def test_resume_requires_paused_job(queue):
    queue.register("accounts", lambda context: None)
    job_id = queue.submit("accounts", None)
    queue.wait_for(job_id, timeout=10)

    with pytest.raises(InvalidJobTransition):
        queue.resume(job_id)


def test_manual_retry(queue):
    calls = []

    def handler(context):
        calls.append(context.attempt)
        if len(calls) == 1:
            raise JobFailed("bad input")
        return {"ok": True}

    queue.register("accounts", handler)
    job_id = queue.submit("accounts", None)
    assert queue.wait_for(job_id, timeout=10)["status"] == JobStatus.FAILED.value

    assert queue.retry(job_id)["status"] == JobStatus.QUEUED.value
    job = queue.wait_for(job_id, timeout=10)
    assert job["status"] == JobStatus.COMPLETED.value
    assert calls == [1, 2]

    with pytest.raises(InvalidJobTransition):
        queue.retry(job_id)


def test_retry_without_payload_is_rejected(queue, store):
    queue.register("accounts", lambda context: None)
    job_id = store.create_job("accounts", status=JobStatus.RUNNING.value)["id"]
    store.transition(job_id, JobStatus.FAILED.value)

    with pytest.raises(OrchestrationError, match="no longer be retried"):
        queue.retry(job_id)


def test_recover_stalled_job_without_payload(queue, store, session_factory):
    job_id = store.create_job("accounts", status=JobStatus.RUNNING.value)["id"]
    with session_factory() as session:
        session.get(BatchImportJob, job_id).heartbeat_at = datetime.now(timezone.utc) - timedelta(hours=1)
        session.commit()

    assert queue.recover_stalled() == [job_id]
    job = store.require_job(job_id)
    assert job["status"] == JobStatus.FAILED.value
    assert job["error_message"] == "Job stalled and its input is no longer available"
    assert queue.recover_stalled() == []


def test_recover_stalled_job_with_payload_runs_again(queue, store, session_factory):
    runs = []

    def handler(context):
        runs.append(context.payload)
        return {"rows": context.payload}

    queue.register("accounts", handler)
    # A RUNNING job whose worker thread died: its input is held here but nothing executes it.
    job_id = store.create_job("accounts", queue="import", status=JobStatus.RUNNING.value)["id"]
    queue._held[job_id] = _HeldJob(job_type="accounts", payload="rows")
    with session_factory() as session:
        session.get(BatchImportJob, job_id).heartbeat_at = datetime.now(timezone.utc) - timedelta(hours=1)
        session.commit()

    with queue.broker.subscribe(job_id) as channel:
        assert queue.recover_stalled() == [job_id]
        first = channel.get(timeout=5)
    assert first.status == JobStatus.QUEUED.value
    assert first.message == "Requeued after stall"

    job = queue.wait_for(job_id, timeout=10)
    assert job["status"] == JobStatus.COMPLETED.value
    assert job["result"] == {"rows": "rows"}
    assert runs == ["rows"]
    assert not queue.is_held(job_id)


def test_failed_job_input_is_released_after_retention(queue, settings):
    def handler(context):
        raise JobFailed("bad input")

    queue.register("accounts", handler)
    job_id = queue.submit("accounts", b"x" * 1024)
    assert queue.wait_for(job_id, timeout=10)["status"] == JobStatus.FAILED.value
    assert queue.is_held(job_id)

    assert queue.release_expired() == []
    later = time.monotonic() + settings.job_payload_retention_seconds + 1
    assert queue.release_expired(now=later) == [job_id]
    assert not queue.is_held(job_id)

    with pytest.raises(OrchestrationError, match="expired"):
        queue.retry(job_id)


def test_zero_retention_releases_input_immediately(queue):
    queue.settings.job_payload_retention_seconds = 0
    release = threading.Event()

    def blocker(context):
        release.wait(5)
        return None

    queue.register("accounts", blocker)
    first = queue.submit("accounts", "first")
    second = queue.submit("accounts", "second")

    queue.cancel(second)
    assert not queue.is_held(second)
    release.set()
    assert queue.wait_for(first, timeout=10)["status"] == JobStatus.COMPLETED.value


def test_job_resumed_while_completing_still_completes(queue):
    def handler(context):
        queue.pause(context.job_id)
        # Resume moved the stored status before the worker's pause flag was cleared.
        queue.store.transition(context.job_id, JobStatus.RUNNING.value, expected=[JobStatus.PAUSED.value])
        return {"done": True}

    queue.register("accounts", handler)
    job = queue.wait_for(queue.submit("accounts", None), timeout=10)

    assert job["status"] == JobStatus.COMPLETED.value
    assert job["result"] == {"done": True}
