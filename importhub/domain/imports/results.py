"""
Result models returned by entity importers and the batch orchestrator.
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ImportIssue(BaseModel):
    """Structured error or warning scoped to a source row or an uploaded file."""
    row: Optional[int] = None
    file: Optional[str] = None
    field: Optional[str] = None
    item: Optional[str] = None
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR


class EntityImportResult(BaseModel):
    """Outcome of one entity importer run. created + updated + skipped + failed == total."""
    entity: str
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[ImportIssue] = Field(default_factory=list)
    warnings: List[ImportIssue] = Field(default_factory=list)
    created_ids: List[str] = Field(default_factory=list)
    updated_ids: List[str] = Field(default_factory=list)
    superseded_ids: List[str] = Field(default_factory=list)
    related_created_ids: Dict[str, List[str]] = Field(default_factory=dict)
    stats: Dict[str, int] = Field(default_factory=dict)
    processing_time_ms: int = 0

    def add_error(self, message: str, *, row: Optional[int] = None, file: Optional[str] = None,
                  field: Optional[str] = None, item: Optional[str] = None) -> None:
        self.errors.append(ImportIssue(row=row, file=file, field=field, item=item, message=message))

    def add_warning(self, message: str, *, row: Optional[int] = None, file: Optional[str] = None,
                    field: Optional[str] = None, item: Optional[str] = None) -> None:
        self.warnings.append(
            ImportIssue(row=row, file=file, field=field, item=item, message=message,
                        severity=IssueSeverity.WARNING)
        )

    def bump(self, stat: str, amount: int = 1) -> None:
        self.stats[stat] = self.stats.get(stat, 0) + amount

    def add_related(self, entity: str, record_id: str) -> None:
        self.related_created_ids.setdefault(entity, []).append(record_id)

    @property
    def accounted(self) -> int:
        return self.created + self.updated + self.skipped + self.failed

    def is_balanced(self) -> bool:
        return self.accounted == self.total

    def sort_issues(self) -> None:
        """Concurrent persistence appends out of order; present issues by source row."""
        key = lambda issue: (issue.row is None, issue.row or 0, issue.file or "")
        self.errors.sort(key=key)
        self.warnings.sort(key=key)


class OverallStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class BatchSummary(BaseModel):
    total_records: int = 0
    total_created: int = 0
    total_updated: int = 0
    total_failed: int = 0
    total_skipped: int = 0

    def absorb(self, result: EntityImportResult) -> None:
        self.total_records += result.total
        self.total_created += result.created
        self.total_updated += result.updated
        self.total_failed += result.failed
        self.total_skipped += result.skipped


class BatchImportResult(BaseModel):
    job_id: Optional[str] = None
    accounts: Optional[EntityImportResult] = None
    products: Optional[EntityImportResult] = None
    opportunities: Optional[EntityImportResult] = None
    assets: Optional[EntityImportResult] = None
    summary: BatchSummary = Field(default_factory=BatchSummary)
    overall_status: OverallStatus = OverallStatus.COMPLETED
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    rolled_back: bool = False
    follow_up_job_ids: List[str] = Field(default_factory=list)
    processing_time_ms: int = 0

    def entity_result(self, entity: str) -> Optional[EntityImportResult]:
        return getattr(self, entity)

    def set_entity_result(self, entity: str, result: EntityImportResult) -> None:
        setattr(self, entity, result)

    def entity_results(self) -> Dict[str, EntityImportResult]:
        results = {}
        for name in ("accounts", "products", "opportunities", "assets"):
            result = getattr(self, name)
            if result is not None:
                results[name] = result
        return results
