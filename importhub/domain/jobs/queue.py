"""
In-process job queue for import work.

Jobs are persisted through ``JobStore`` before they run; payloads (file
buffers) are held in memory by this worker only. Each queue class has its own
``ThreadPoolExecutor`` so heavyweight asset vectorization never starves the
light entity imports. Failures are retried with exponential backoff until the
job's attempt budget is spent. Cancellation and pausing are cooperative and
observed at the checkpoints importers call between stages and batches.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from importhub.core.config import Settings
from importhub.db.models import TERMINAL_JOB_STATUSES, JobStatus
from importhub.domain.imports.errors import (
    ImportHubError,
    InvalidJobTransition,
    JobCancelled,
    JobFailed,
    OrchestrationError,
)
from importhub.domain.jobs.events import JobProgressSink, ProgressBroker, publish_job
from importhub.domain.jobs.store import JobStore

logger = logging.getLogger(__name__)

JOB_QUEUES: Dict[str, str] = {
    "accounts": "import",
    "products": "import",
    "opportunities": "import",
    "batch": "batch",
    "assets": "assets",
    "insights": "insights",
}

CANCELLABLE = {JobStatus.QUEUED.value, JobStatus.RUNNING.value, JobStatus.PAUSED.value}
PAUSABLE = {JobStatus.QUEUED.value, JobStatus.RUNNING.value}
RETRYABLE = {JobStatus.FAILED.value, JobStatus.CANCELLED.value}


@dataclass
class JobContext:
    """Everything a handler needs to run one attempt of a job."""
    job_id: str
    job_type: str
    payload: Any
    options: Dict[str, Any]
    attempt: int
    checkpoint: Callable[[], None]
    progress: JobProgressSink


JobHandler = Callable[[JobContext], Any]


@dataclass
class _HeldJob:
    job_type: str
    payload: Any
    options: Dict[str, Any] = field(default_factory=dict)


class _JobControl:
    def __init__(self) -> None:
        self.cancelled = threading.Event()
        self.paused = threading.Event()


class JobQueue:
    def __init__(self, store: JobStore, settings: Settings, broker: Optional[ProgressBroker] = None):
        self.store = store
        self.settings = settings
        self.broker = broker
        self._handlers: Dict[str, JobHandler] = {}
        self._held: Dict[str, _HeldJob] = {}
        self._finished: Dict[str, float] = {}  # job id -> monotonic time it became FAILED/CANCELLED
        self._controls: Dict[str, _JobControl] = {}
        self._scheduled: Set[str] = set()
        self._active: Set[str] = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._monitor: Optional[threading.Thread] = None
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        for queue_name in set(JOB_QUEUES.values()):
            workers = max(1, int(settings.queue_concurrency.get(queue_name, 1)))
            self._executors[queue_name] = ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix=f"importhub-{queue_name}",
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register(self, job_type: str, handler: JobHandler) -> None:
        if job_type not in JOB_QUEUES:
            raise ValueError(f"Unknown job type: {job_type}")
        self._handlers[job_type] = handler

    def start(self) -> None:
        """Start the heartbeat and stall monitor thread."""
        if self._monitor is not None:
            return
        self._monitor = threading.Thread(target=self._monitor_loop, name="importhub-monitor", daemon=True)
        self._monitor.start()
        logger.info(
            "Job queue started (concurrency=%s)",
            {name: max(1, int(self.settings.queue_concurrency.get(name, 1))) for name in self._executors},
        )

    def shutdown(self, wait: bool = True) -> None:
        self._stop.set()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        for executor in self._executors.values():
            executor.shutdown(wait=wait, cancel_futures=True)
        if self._monitor is not None and wait:
            self._monitor.join(timeout=5)
        logger.info("Job queue stopped")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def submit(
        self,
        job_type: str,
        payload: Any,
        options: Optional[Dict[str, Any]] = None,
        *,
        stages: Optional[Iterable[str]] = None,
        message: Optional[str] = None,
    ) -> str:
        """Persist a QUEUED job and schedule it. Returns immediately with the job id."""
        if job_type not in self._handlers:
            raise OrchestrationError(f"No handler registered for job type '{job_type}'")
        if self._stop.is_set():
            raise OrchestrationError("Job queue is shutting down")

        max_attempts = (
            self.settings.insight_job_max_attempts if job_type == "insights" else self.settings.job_max_attempts
        )
        job = self.store.create_job(
            job_type,
            queue=JOB_QUEUES[job_type],
            options=options,
            max_attempts=max_attempts,
            stages=stages,
            message=message,
        )
        job_id = job["id"]
        with self._lock:
            self._held[job_id] = _HeldJob(job_type=job_type, payload=payload, options=dict(options or {}))
            self._controls[job_id] = _JobControl()
        publish_job(self.broker, job)
        self._dispatch(job_id)
        return job_id

    def cancel(self, job_id: str) -> Dict[str, Any]:
        """
        Cancel a job. QUEUED and PAUSED jobs that are not executing stop
        immediately; a running job stops at its next checkpoint.
        """
        job = self.store.require_job(job_id)
        status = job["status"]
        if status not in CANCELLABLE:
            raise InvalidJobTransition(job_id, status, JobStatus.CANCELLED.value)

        with self._lock:
            self._control(job_id).cancelled.set()
            executing = job_id in self._active
            timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

        if executing:
            logger.info("Cancellation requested for running job %s", job_id)
            return self.store.require_job(job_id)

        job = self.store.transition(job_id, JobStatus.CANCELLED.value, message="Cancelled")
        self._retain(job_id)
        publish_job(self.broker, job)
        return job

    def pause(self, job_id: str) -> Dict[str, Any]:
        job = self.store.transition(
            job_id,
            JobStatus.PAUSED.value,
            message="Paused",
            expected=PAUSABLE,
        )
        with self._lock:
            self._control(job_id).paused.set()
            timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        publish_job(self.broker, job)
        return job

    def resume(self, job_id: str) -> Dict[str, Any]:
        """Resume a paused job: back to RUNNING if it is executing here, otherwise QUEUED."""
        with self._lock:
            executing = job_id in self._active
        target = JobStatus.RUNNING.value if executing else JobStatus.QUEUED.value
        job = self.store.transition(job_id, target, message="Resumed", expected=[JobStatus.PAUSED.value])
        with self._lock:
            self._control(job_id).paused.clear()
        publish_job(self.broker, job)
        if not executing:
            self._dispatch(job_id)
        return job

    def retry(self, job_id: str) -> Dict[str, Any]:
        """
        Resubmit a FAILED or CANCELLED job whose payload is still held.
        Payloads are released ``job_payload_retention_seconds`` after the job
        finished.
        """
        job = self.store.require_job(job_id)
        if job["status"] not in RETRYABLE:
            raise InvalidJobTransition(job_id, job["status"], JobStatus.QUEUED.value)
        with self._lock:
            held = job_id in self._held
        if not held:
            raise OrchestrationError(
                f"Job {job_id} can no longer be retried: its input has expired or is not available"
            )

        job = self.store.transition(job_id, JobStatus.QUEUED.value, message="Queued for retry")
        with self._lock:
            self._finished.pop(job_id, None)
            self._controls[job_id] = _JobControl()
        publish_job(self.broker, job)
        self._dispatch(job_id)
        return job

    def recover_stalled(self) -> List[str]:
        """
        Requeue RUNNING jobs whose heartbeat is older than the stall timeout.

        Jobs executing in this worker are only re-heartbeated. Jobs whose
        payload is gone cannot be re-run and are marked FAILED.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.settings.job_stall_timeout_seconds)
        recovered = []
        for job_id in self.store.find_stalled(cutoff):
            with self._lock:
                executing = job_id in self._active
                held = job_id in self._held
            if executing:
                self.store.heartbeat(job_id)
                continue
            try:
                if held:
                    job = self.store.transition(
                        job_id,
                        JobStatus.QUEUED.value,
                        message="Requeued after stall",
                        expected=[JobStatus.RUNNING.value],
                    )
                    logger.warning("Job %s stalled; requeued", job_id)
                    publish_job(self.broker, job)
                    self._dispatch(job_id)
                else:
                    job = self.store.transition(
                        job_id,
                        JobStatus.FAILED.value,
                        error_message="Job stalled and its input is no longer available",
                        expected=[JobStatus.RUNNING.value],
                    )
                    logger.warning("Job %s stalled without a payload; marked failed", job_id)
                    publish_job(self.broker, job)
            except InvalidJobTransition:
                continue
            recovered.append(job_id)
        return recovered

    def wait_for(self, job_id: str, timeout: float = 30.0, poll: float = 0.05) -> Dict[str, Any]:
        """Block until the job reaches a terminal status or ``timeout`` elapses."""
        deadline = datetime.now(timezone.utc) + timedelta(seconds=timeout)
        job = self.store.require_job(job_id)
        while job["status"] not in TERMINAL_JOB_STATUSES:
            if datetime.now(timezone.utc) >= deadline:
                break
            time.sleep(poll)
            job = self.store.require_job(job_id)
        return job

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def is_held(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._held

    def forget(self, job_id: str) -> None:
        """Drop the held payload of a finished job."""
        with self._lock:
            self._held.pop(job_id, None)
            self._finished.pop(job_id, None)
            self._controls.pop(job_id, None)

    def release_expired(self, now: Optional[float] = None) -> List[str]:
        """Drop payloads of FAILED and CANCELLED jobs whose retention window has passed."""
        now = time.monotonic() if now is None else now
        cutoff = now - self.settings.job_payload_retention_seconds
        with self._lock:
            expired = [job_id for job_id, finished in self._finished.items() if finished <= cutoff]
            for job_id in expired:
                self.forget(job_id)
        if expired:
            logger.info("Released input of %d finished jobs", len(expired))
        return expired

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _control(self, job_id: str) -> _JobControl:
        control = self._controls.get(job_id)
        if control is None:
            control = _JobControl()
            self._controls[job_id] = control
        return control

    def _dispatch(self, job_id: str) -> None:
        with self._lock:
            self._timers.pop(job_id, None)
            held = self._held.get(job_id)
            if held is None or job_id in self._scheduled or self._stop.is_set():
                return
            self._scheduled.add(job_id)
        executor = self._executors[JOB_QUEUES[held.job_type]]
        try:
            executor.submit(self._run, job_id)
        except RuntimeError:
            with self._lock:
                self._scheduled.discard(job_id)
            logger.warning("Job %s not scheduled: executor is shut down", job_id)

    def _run(self, job_id: str) -> None:
        with self._lock:
            self._scheduled.discard(job_id)
            held = self._held.get(job_id)
            control = self._control(job_id)
        if held is None or control.cancelled.is_set():
            return

        try:
            attempt = self.store.record_attempt(job_id)
        except ImportHubError as exc:
            logger.info("Skipping job %s: %s", job_id, exc.message)
            return

        with self._lock:
            self._active.add(job_id)
        job = self.store.require_job(job_id)
        publish_job(self.broker, job)
        logger.info("Job %s (%s) attempt %d/%d started", job_id, held.job_type, attempt, job["max_attempts"])

        context = JobContext(
            job_id=job_id,
            job_type=held.job_type,
            payload=held.payload,
            options=held.options,
            attempt=attempt,
            checkpoint=lambda: self._checkpoint(job_id),
            progress=JobProgressSink(self.store, self.broker, job_id),
        )
        try:
            result = self._handlers[held.job_type](context)
        except JobCancelled:
            self._finish_cancelled(job_id)
        except Exception as exc:
            self._handle_failure(job_id, attempt, job["max_attempts"], exc)
        else:
            self._complete(job_id, result)
        finally:
            with self._lock:
                self._active.discard(job_id)

    def _checkpoint(self, job_id: str) -> None:
        control = self._control(job_id)
        if control.cancelled.is_set():
            raise JobCancelled(job_id)
        if control.paused.is_set():
            logger.info("Job %s paused at checkpoint", job_id)
            while control.paused.is_set() and not control.cancelled.is_set():
                if self._stop.wait(self.settings.job_pause_poll_seconds):
                    raise JobCancelled(job_id, "Worker shut down while the job was paused")
            if control.cancelled.is_set():
                raise JobCancelled(job_id)
            logger.info("Job %s resumed", job_id)

    def _retain(self, job_id: str) -> None:
        """Start the retention window for the payload of a FAILED or CANCELLED job."""
        if self.settings.job_payload_retention_seconds <= 0:
            self.forget(job_id)
            return
        with self._lock:
            if job_id in self._held:
                self._finished[job_id] = time.monotonic()

    def _complete(self, job_id: str, result: Any) -> None:
        control = self._control(job_id)
        try:
            # The stored status decides; a concurrent resume may already have moved it.
            if self.store.require_job(job_id)["status"] == JobStatus.PAUSED.value:
                # Paused after the last checkpoint; the work is already done.
                try:
                    self.store.transition(job_id, JobStatus.RUNNING.value, expected=[JobStatus.PAUSED.value])
                except InvalidJobTransition:
                    logger.debug("Job %s resumed while completing", job_id)
            control.paused.clear()
            job = self.store.transition(
                job_id,
                JobStatus.COMPLETED.value,
                message="Completed",
                result=result,
                expected=[JobStatus.RUNNING.value],
            )
        except InvalidJobTransition as exc:
            logger.warning("Job %s finished but could not be completed: %s", job_id, exc.message)
            return
        publish_job(self.broker, job)
        self.forget(job_id)
        logger.info("Job %s completed", job_id)

    def _finish_cancelled(self, job_id: str) -> None:
        self._retain(job_id)
        try:
            job = self.store.transition(job_id, JobStatus.CANCELLED.value, message="Cancelled")
        except InvalidJobTransition:
            return
        publish_job(self.broker, job)
        logger.info("Job %s cancelled", job_id)

    def _handle_failure(self, job_id: str, attempt: int, max_attempts: int, exc: Exception) -> None:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        if self._control(job_id).cancelled.is_set():
            self._finish_cancelled(job_id)
            return

        retryable = not isinstance(exc, JobFailed)
        if retryable and attempt < max_attempts and not self._stop.is_set():
            delay = self.settings.job_backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Job %s attempt %d/%d failed: %s; retrying in %.1fs",
                job_id, attempt, max_attempts, message, delay,
            )
            try:
                job = self.store.transition(
                    job_id,
                    JobStatus.QUEUED.value,
                    message=f"Retrying in {delay:.1f}s after error",
                    error_message=message,
                    expected=[JobStatus.RUNNING.value],
                )
            except InvalidJobTransition:
                return
            publish_job(self.broker, job)
            timer = threading.Timer(delay, self._dispatch, args=(job_id,))
            timer.daemon = True
            with self._lock:
                self._timers[job_id] = timer
            timer.start()
            return

        if retryable:
            logger.error("Job %s failed after %d attempts: %s", job_id, attempt, message)
        else:
            logger.error("Job %s failed: %s", job_id, message)
        self._retain(job_id)
        try:
            job = self.store.transition(
                job_id,
                JobStatus.FAILED.value,
                message="Failed",
                error_message=message,
                result=getattr(exc, "result", None),
            )
        except InvalidJobTransition:
            return
        publish_job(self.broker, job)

    def _monitor_loop(self) -> None:
        interval = max(0.05, min(
            self.settings.job_heartbeat_interval_seconds,
            self.settings.job_stall_timeout_seconds / 2,
        ))
        while not self._stop.wait(interval):
            with self._lock:
                active = list(self._active)
            for job_id in active:
                try:
                    self.store.heartbeat(job_id)
                except Exception as exc:
                    logger.debug("Heartbeat for job %s failed: %s", job_id, exc)
            try:
                self.recover_stalled()
            except Exception as exc:
                logger.error("Stall recovery failed: %s", exc)
            self.release_expired()
