"""
Error taxonomy for imports and import jobs.

Record-level errors (RowValidationError, PersistenceError) are caught inside an
entity importer and turned into structured issues. Entity-level and batch-level
errors propagate to the orchestrator, which decides what they mean for the run.
"""
from typing import Optional


class ImportHubError(Exception):
    """Base class for all import and job errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RowValidationError(ImportHubError):
    """A row failed a required, length, range or domain check."""

    def __init__(self, message: str, row: Optional[int] = None, field: Optional[str] = None):
        self.row = row
        self.field = field
        super().__init__(message)


class PersistenceError(ImportHubError):
    """A single record could not be written (constraint conflict, lost race)."""

    def __init__(self, message: str, row: Optional[int] = None, item: Optional[str] = None):
        self.row = row
        self.item = item
        super().__init__(message)


class DependencyUnavailable(ImportHubError):
    """A parser or AI provider failed for a whole file or run."""

    def __init__(self, dependency: str, message: Optional[str] = None):
        self.dependency = dependency
        super().__init__(message or f"Dependency '{dependency}' is unavailable")


class OrchestrationError(ImportHubError):
    """A batch-level precondition was violated; the whole run is rejected."""


class JobCancelled(ImportHubError):
    """Raised at a checkpoint when the job running the import was cancelled."""

    def __init__(self, job_id: Optional[str] = None, message: Optional[str] = None):
        self.job_id = job_id
        super().__init__(message or f"Job {job_id} was cancelled")


class JobNotFound(ImportHubError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} not found")


class InvalidJobTransition(ImportHubError):
    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id} cannot move from {current} to {requested}")


class JobFailed(ImportHubError):
    """A job handler finished with a failed outcome that must not be retried."""

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)


class EntityImportFailed(ImportHubError):
    """An entity importer stopped part way; ``result`` holds what it already wrote."""

    def __init__(self, entity: str, message: str, result=None):
        self.entity = entity
        self.result = result
        super().__init__(message)
