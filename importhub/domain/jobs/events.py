"""
Real-time job events.

``ProgressBroker`` fans ``JobEvent`` objects out to in-process subscribers
(the SSE endpoint). ``JobProgressSink`` is the bridge between importer
progress callbacks and the outside world: it writes a monotonic percentage to
the job header and publishes the stored value as an event.
"""
import logging
import queue
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel

from importhub.domain.imports.progress import BatchProgress, ProgressEvent
from importhub.domain.jobs.store import JobStore
from importhub.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

SUBSCRIBER_BUFFER = 256


class JobEvent(BaseModel):
    id: str
    status: str
    progress: int = 0
    message: Optional[str] = None
    result: Optional[Any] = None

    @classmethod
    def from_job(cls, job: Dict[str, Any]) -> "JobEvent":
        return cls(
            id=job["id"],
            status=job["status"],
            progress=job.get("progress") or 0,
            message=job.get("message"),
            result=job.get("result"),
        )


class ProgressBroker:
    """In-process pub/sub keyed by job id. Slow subscribers lose events, never block publishers."""

    def __init__(self, buffer_size: int = SUBSCRIBER_BUFFER):
        self.buffer_size = buffer_size
        self._subscribers: Dict[str, List[queue.Queue]] = {}
        self._lock = threading.Lock()

    def publish(self, event: JobEvent) -> None:
        with self._lock:
            targets = list(self._subscribers.get(event.id, []))
        for target in targets:
            try:
                target.put_nowait(event)
            except queue.Full:
                logger.debug("Dropping event for slow subscriber of job %s", event.id)

    @contextmanager
    def subscribe(self, job_id: str) -> Iterator[queue.Queue]:
        channel: queue.Queue = queue.Queue(maxsize=self.buffer_size)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(channel)
        try:
            yield channel
        finally:
            with self._lock:
                channels = self._subscribers.get(job_id, [])
                if channel in channels:
                    channels.remove(channel)
                if not channels:
                    self._subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, []))


class JobProgressSink:
    """Progress sink bound to one job; accepts ``ProgressEvent`` or ``BatchProgress``."""

    def __init__(self, store: JobStore, broker: Optional[ProgressBroker], job_id: str):
        self.store = store
        self.broker = broker
        self.job_id = job_id

    def __call__(self, event: Any) -> None:
        if isinstance(event, BatchProgress):
            percentage = event.overall.percentage
            message = event.describe()
        elif isinstance(event, ProgressEvent):
            percentage = event.percentage
            item = f" - {event.current_item}" if event.current_item else ""
            message = f"{event.stage}: {event.processed}/{event.total}{item}"
        else:
            raise TypeError(f"Unsupported progress event {type(event).__name__}")

        try:
            job = self.store.update_progress(self.job_id, percentage, message=message)
        except Exception as exc:  # pragma: no cover - progress is best effort
            logger.debug("Unable to update job %s progress: %s", self.job_id, exc)
            return
        if job is not None:
            self.publish_job(job)

    def publish_job(self, job: Dict[str, Any]) -> None:
        if self.broker is not None:
            self.broker.publish(JobEvent.from_job(job))


def publish_job(broker: Optional[ProgressBroker], job: Optional[Dict[str, Any]]) -> None:
    if broker is not None and job is not None:
        broker.publish(JobEvent.from_job(job))


def event_payload(event: JobEvent) -> Dict[str, Any]:
    return _make_json_safe(event)
