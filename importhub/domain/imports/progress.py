"""
Progress reporting contract shared by importers, the orchestrator and workers.

Importers emit ``ProgressEvent`` objects to a sink (any callable). Sinks are
observers only: a failing sink is logged and ignored so reporting can never
fail an import.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    stage: str
    processed: int = 0
    total: int = 0
    current_item: Optional[str] = None
    errors: int = 0
    warnings: int = 0

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 100.0 if self.stage == "completed" else 0.0
        return min(100.0, (self.processed / self.total) * 100)


ProgressSink = Callable[[ProgressEvent], None]
Checkpoint = Callable[[], None]


def noop_checkpoint() -> None:
    return None


def emit(sink: Optional[Callable[[Any], None]], event: Any) -> None:
    """Best-effort delivery; never fails the import if the sink misbehaves."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception as exc:  # pragma: no cover - sinks are advisory
        logger.debug("Progress sink raised %s; ignoring", exc)


@dataclass
class StepProgress:
    processed: int = 0
    total: int = 0
    percentage: float = 0.0


@dataclass
class CurrentProgress:
    entity: Optional[str] = None
    stage: Optional[str] = None
    processed: int = 0
    total: int = 0
    percentage: float = 0.0
    current_item: Optional[str] = None


@dataclass
class BatchProgress:
    """Unified view of a batch run: overall steps plus the active importer's sub-progress."""
    job_id: Optional[str]
    stage: str = "initializing"
    overall: StepProgress = field(default_factory=StepProgress)
    current: CurrentProgress = field(default_factory=CurrentProgress)
    errors: int = 0
    warnings: int = 0
    started_at: float = field(default_factory=time.monotonic)
    estimated_time_remaining_s: Optional[float] = None

    def start_entity(self, entity: str) -> None:
        self.stage = entity
        self.current = CurrentProgress(entity=entity)

    def track(self, event: ProgressEvent) -> None:
        self.current.stage = event.stage
        self.current.processed = event.processed
        self.current.total = event.total
        self.current.percentage = round(event.percentage, 2)
        self.current.current_item = event.current_item

    def complete_step(self) -> None:
        self.overall.processed += 1
        total = max(self.overall.total, 1)
        self.overall.percentage = round(min(100.0, self.overall.processed / total * 100), 2)
        elapsed = time.monotonic() - self.started_at
        remaining_steps = max(self.overall.total - self.overall.processed, 0)
        if self.overall.processed:
            self.estimated_time_remaining_s = round(elapsed / self.overall.processed * remaining_steps, 2)

    def finish(self) -> None:
        self.stage = "completed"
        self.overall.percentage = 100.0
        self.estimated_time_remaining_s = 0.0

    def describe(self) -> str:
        item = f" - {self.current.current_item}" if self.current.current_item else ""
        return f"{self.stage}: {self.current.processed}/{self.current.total}{item}"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("started_at", None)
        return payload
