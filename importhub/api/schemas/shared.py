from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ImportJobStageInfo(BaseModel):
    name: str
    status: str
    progress: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class ImportJobInfo(BaseModel):
    """Metadata about a queued or synchronous import job."""
    id: str
    type: str
    queue: Optional[str] = None
    status: str
    progress: int = 0
    message: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 1
    options: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    stages: List[ImportJobStageInfo] = []


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    """Response wrapper for a list of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class QueuedJobResponse(BaseModel):
    success: bool
    job_id: str
    status: str
    message: Optional[str] = None


class ImportStatsResponse(BaseModel):
    success: bool
    since: Optional[datetime] = None
    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    success_rate: Optional[float] = None
