"""
Endpoints for tracking and controlling import jobs.
"""
import json
import logging
import queue
from typing import Iterator, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from importhub.api.dependencies import get_services
from importhub.api.schemas.shared import ImportJobListResponse, ImportJobResponse
from importhub.db.models import TERMINAL_JOB_STATUSES
from importhub.domain.jobs.events import JobEvent, event_payload
from importhub.services import Services

router = APIRouter(prefix="/import/jobs", tags=["import-jobs"])

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


@router.get("", response_model=ImportJobListResponse)
async def list_import_jobs_endpoint(
    status: Optional[str] = None,
    type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    services: Services = Depends(get_services),
):
    jobs, total = await run_in_threadpool(
        services.store.list_jobs, status=status, job_type=type, limit=limit, offset=offset
    )
    return ImportJobListResponse(success=True, jobs=jobs, total_count=total, limit=limit, offset=offset)


@router.get("/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(job_id: str, services: Services = Depends(get_services)):
    job = await run_in_threadpool(services.orchestrator.get_job_status, job_id)
    return ImportJobResponse(success=True, job=job)


@router.post("/{job_id}/cancel", response_model=ImportJobResponse)
async def cancel_import_job_endpoint(job_id: str, services: Services = Depends(get_services)):
    job = await run_in_threadpool(services.orchestrator.cancel_job, job_id)
    return ImportJobResponse(success=True, job=job)


@router.post("/{job_id}/pause", response_model=ImportJobResponse)
async def pause_import_job_endpoint(job_id: str, services: Services = Depends(get_services)):
    job = await run_in_threadpool(services.queue.pause, job_id)
    return ImportJobResponse(success=True, job=job)


@router.post("/{job_id}/resume", response_model=ImportJobResponse)
async def resume_import_job_endpoint(job_id: str, services: Services = Depends(get_services)):
    job = await run_in_threadpool(services.queue.resume, job_id)
    return ImportJobResponse(success=True, job=job)


@router.post("/{job_id}/retry", response_model=ImportJobResponse)
async def retry_import_job_endpoint(job_id: str, services: Services = Depends(get_services)):
    job = await run_in_threadpool(services.queue.retry, job_id)
    return ImportJobResponse(success=True, job=job)


def _sse(event: JobEvent) -> str:
    return f"event: job\ndata: {json.dumps(event_payload(event))}\n\n"


def _job_events(services: Services, job_id: str, keepalive: float) -> Iterator[str]:
    with services.broker.subscribe(job_id) as channel:
        job = services.store.require_job(job_id)
        yield _sse(JobEvent.from_job(job))
        if job["status"] in TERMINAL_JOB_STATUSES:
            return
        while True:
            try:
                event = channel.get(timeout=keepalive)
            except queue.Empty:
                job = services.store.get_job(job_id)
                if job is None:
                    return
                if job["status"] in TERMINAL_JOB_STATUSES:
                    yield _sse(JobEvent.from_job(job))
                    return
                yield ": keep-alive\n\n"
                continue
            yield _sse(event)
            if event.status in TERMINAL_JOB_STATUSES:
                return


@router.get("/{job_id}/events")
async def stream_import_job_events(job_id: str, services: Services = Depends(get_services)):
    """Server-sent events with the job's status and progress until it finishes."""
    await run_in_threadpool(services.store.require_job, job_id)
    return StreamingResponse(
        _job_events(services, job_id, KEEPALIVE_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
