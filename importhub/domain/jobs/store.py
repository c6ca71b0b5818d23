"""
Persistent tracking for batch import jobs.

One ``batch_import_jobs`` header row per job, with ``batch_import_job_stages``
rows for the entities a batch walks through. Status changes go through a
single transition table; progress only moves forward while a job is RUNNING.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from importhub.db.models import TERMINAL_JOB_STATUSES, BatchImportJob, JobStage, JobStatus
from importhub.domain.imports.errors import InvalidJobTransition, JobNotFound
from importhub.utils.date import as_utc
from importhub.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED.value: {
        JobStatus.RUNNING.value, JobStatus.PAUSED.value, JobStatus.CANCELLED.value, JobStatus.FAILED.value,
    },
    JobStatus.RUNNING.value: {
        JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value,
        JobStatus.PAUSED.value, JobStatus.QUEUED.value,
    },
    JobStatus.PAUSED.value: {
        JobStatus.RUNNING.value, JobStatus.QUEUED.value, JobStatus.CANCELLED.value, JobStatus.FAILED.value,
    },
    # Manual retry
    JobStatus.FAILED.value: {JobStatus.QUEUED.value},
    JobStatus.CANCELLED.value: {JobStatus.QUEUED.value},
    JobStatus.COMPLETED.value: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp_progress(value: Any) -> int:
    return max(0, min(100, int(round(float(value)))))


def _stage_to_dict(stage: JobStage) -> Dict[str, Any]:
    return {
        "name": stage.name,
        "status": stage.status,
        "progress": stage.progress,
        "started_at": as_utc(stage.started_at),
        "completed_at": as_utc(stage.completed_at),
        "error_message": stage.error_message,
    }


def _row_to_job(job: BatchImportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "queue": job.queue,
        "status": job.status,
        "progress": job.progress,
        "message": job.message,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "options": job.options or {},
        "result": job.result,
        "error_message": job.error_message,
        "created_at": as_utc(job.created_at),
        "updated_at": as_utc(job.updated_at),
        "started_at": as_utc(job.started_at),
        "completed_at": as_utc(job.completed_at),
        "failed_at": as_utc(job.failed_at),
        "heartbeat_at": as_utc(job.heartbeat_at),
        "stages": [_stage_to_dict(stage) for stage in job.stages],
    }


class JobStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_job(
        self,
        job_type: str,
        *,
        queue: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        max_attempts: int = 1,
        status: str = JobStatus.QUEUED.value,
        stages: Optional[Iterable[str]] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create and persist a new job header with optional stage rows."""
        now = _utcnow()
        with self.session_factory() as session:
            job = BatchImportJob(
                type=job_type,
                queue=queue,
                status=status,
                progress=0,
                message=message or ("Queued" if status == JobStatus.QUEUED.value else "Starting"),
                attempts=1 if status == JobStatus.RUNNING.value else 0,
                max_attempts=max_attempts,
                options=_make_json_safe(options or {}),
                created_at=now,
                updated_at=now,
            )
            if status == JobStatus.RUNNING.value:
                job.started_at = now
                job.heartbeat_at = now
            for position, name in enumerate(stages or []):
                job.stages.append(JobStage(name=name, position=position, status=JobStatus.QUEUED.value))
            session.add(job)
            session.commit()
            logger.info("Created %s job %s (%s)", job_type, job.id, status)
            return _row_to_job(job)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single job by ID."""
        with self.session_factory() as session:
            job = session.get(BatchImportJob, job_id)
            return _row_to_job(job) if job else None

    def require_job(self, job_id: str) -> Dict[str, Any]:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List jobs newest first, optionally filtered by status and type."""
        with self.session_factory() as session:
            query = session.query(BatchImportJob)
            if status:
                query = query.filter(BatchImportJob.status == status.upper())
            if job_type:
                query = query.filter(BatchImportJob.type == job_type)
            total = query.count()
            rows = (
                query.order_by(BatchImportJob.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_row_to_job(row) for row in rows], total

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(
        self,
        job_id: str,
        status: str,
        *,
        message: Optional[str] = None,
        error_message: Optional[str] = None,
        result: Optional[Any] = None,
        expected: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        Move a job to ``status``.

        Raises:
            JobNotFound: no such job.
            InvalidJobTransition: the move is not allowed from the current
                status, or the current status is not in ``expected``.
        """
        with self.session_factory() as session:
            job = self._locked(session, job_id)
            current = job.status
            allowed = ALLOWED_TRANSITIONS.get(current, set())
            if status not in allowed or (expected is not None and current not in set(expected)):
                raise InvalidJobTransition(job_id, current, status)

            now = _utcnow()
            job.status = status
            job.updated_at = now
            if message is not None:
                job.message = message
            if error_message is not None:
                job.error_message = error_message
            if result is not None:
                job.result = _make_json_safe(result)

            if status == JobStatus.RUNNING.value:
                if job.started_at is None:
                    job.started_at = now
                job.heartbeat_at = now
            elif status == JobStatus.COMPLETED.value:
                job.progress = 100
                job.completed_at = now
            elif status == JobStatus.FAILED.value:
                job.failed_at = now
            elif status == JobStatus.CANCELLED.value:
                job.completed_at = now
            elif status == JobStatus.QUEUED.value:
                # Retry or stall recovery starts from scratch.
                job.progress = 0
                job.heartbeat_at = None
                if current in (JobStatus.FAILED.value, JobStatus.CANCELLED.value):
                    job.error_message = error_message
                    job.failed_at = None
                    job.completed_at = None
                    job.result = None
                for stage in job.stages:
                    stage.status = JobStatus.QUEUED.value
                    stage.progress = 0
                    stage.started_at = None
                    stage.completed_at = None
                    stage.error_message = None

            session.commit()
            logger.info("Job %s: %s -> %s", job_id, current, status)
            return _row_to_job(job)

    def record_attempt(self, job_id: str) -> int:
        """Count a new execution attempt and mark the job RUNNING."""
        with self.session_factory() as session:
            job = self._locked(session, job_id)
            if job.status != JobStatus.QUEUED.value:
                raise InvalidJobTransition(job_id, job.status, JobStatus.RUNNING.value)
            now = _utcnow()
            job.attempts = (job.attempts or 0) + 1
            job.status = JobStatus.RUNNING.value
            job.started_at = job.started_at or now
            job.heartbeat_at = now
            job.updated_at = now
            job.message = f"Running (attempt {job.attempts}/{job.max_attempts})"
            session.commit()
            return job.attempts

    def update_progress(
        self,
        job_id: str,
        progress: Any,
        *,
        message: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Record progress for a RUNNING job. Progress never decreases; updates
        for jobs in any other status are ignored and return None.
        """
        with self.session_factory() as session:
            job = self._locked(session, job_id)
            if job.status != JobStatus.RUNNING.value:
                return None
            now = _utcnow()
            job.progress = max(job.progress or 0, _clamp_progress(progress))
            job.heartbeat_at = now
            job.updated_at = now
            if message is not None:
                job.message = message
            session.commit()
            return _row_to_job(job)

    def heartbeat(self, job_id: str) -> None:
        with self.session_factory() as session:
            job = session.get(BatchImportJob, job_id)
            if job is not None and job.status == JobStatus.RUNNING.value:
                job.heartbeat_at = _utcnow()
                session.commit()

    def find_stalled(self, cutoff: datetime) -> List[str]:
        """IDs of RUNNING jobs whose last heartbeat is older than ``cutoff``."""
        with self.session_factory() as session:
            rows = (
                session.query(BatchImportJob.id, BatchImportJob.heartbeat_at, BatchImportJob.started_at)
                .filter(BatchImportJob.status == JobStatus.RUNNING.value)
                .all()
            )
        stalled = []
        for row in rows:
            last_seen = as_utc(row.heartbeat_at or row.started_at)
            if last_seen is None or last_seen < cutoff:
                stalled.append(row.id)
        return stalled

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def start_stage(self, job_id: str, name: str) -> None:
        with self.session_factory() as session:
            job = self._locked(session, job_id)
            stage = self._stage(job, name, create=True)
            stage.status = JobStatus.RUNNING.value
            stage.progress = 0
            stage.started_at = _utcnow()
            stage.completed_at = None
            stage.error_message = None
            session.commit()

    def update_stage_progress(self, job_id: str, name: str, progress: Any) -> None:
        with self.session_factory() as session:
            job = self._locked(session, job_id)
            stage = self._stage(job, name, create=True)
            stage.progress = max(stage.progress or 0, _clamp_progress(progress))
            session.commit()

    def finish_stage(
        self,
        job_id: str,
        name: str,
        *,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        with self.session_factory() as session:
            job = self._locked(session, job_id)
            stage = self._stage(job, name, create=True)
            stage.status = JobStatus.COMPLETED.value if success else JobStatus.FAILED.value
            if success:
                stage.progress = 100
            stage.completed_at = _utcnow()
            stage.error_message = error_message
            session.commit()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Job counts by status and by type, optionally limited to jobs created since ``since``."""
        with self.session_factory() as session:
            query = session.query(BatchImportJob.status, BatchImportJob.type, func.count(BatchImportJob.id))
            if since is not None:
                query = query.filter(BatchImportJob.created_at >= since)
            rows = query.group_by(BatchImportJob.status, BatchImportJob.type).all()

        by_status: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        total = 0
        for status, job_type, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            by_type[job_type] = by_type.get(job_type, 0) + count
            total += count
        finished = sum(by_status.get(status, 0) for status in TERMINAL_JOB_STATUSES)
        completed = by_status.get(JobStatus.COMPLETED.value, 0)
        return {
            "since": since,
            "total": total,
            "by_status": by_status,
            "by_type": by_type,
            "success_rate": round(completed / finished * 100, 2) if finished else None,
        }

    # ------------------------------------------------------------------

    def _locked(self, session: Session, job_id: str) -> BatchImportJob:
        job = (
            session.query(BatchImportJob)
            .filter(BatchImportJob.id == job_id)
            .with_for_update()
            .first()
        )
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _stage(self, job: BatchImportJob, name: str, *, create: bool = False) -> JobStage:
        for stage in job.stages:
            if stage.name == name:
                return stage
        if not create:
            raise KeyError(name)
        stage = JobStage(name=name, position=len(job.stages), status=JobStatus.QUEUED.value)
        job.stages.append(stage)
        return stage
