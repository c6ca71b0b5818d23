"""
Batch import orchestration.

Runs the entity importers one after another in dependency order
(accounts -> products -> opportunities -> assets), aggregates their results,
reports unified progress, and applies the batch's failure policy:

- ``continue_on_error=False``: the first failing entity stops the run and
  marks it failed.
- ``continue_on_error=True``: the failure is recorded and the run goes on as
  ``partial``.
- ``rollback_on_error=True``: a failed run deletes what it created.

Insight scheduling and relationship checks are advisory: they only ever add
warnings.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from importhub.core.config import Settings
from importhub.db.models import JobStatus, Opportunity
from importhub.domain.imports.errors import (
    EntityImportFailed,
    ImportHubError,
    JobCancelled,
    OrchestrationError,
)
from importhub.domain.imports.importers.assets import AssetUpload
from importhub.domain.imports.options import DEFAULT_PROCESS_ORDER, BatchImportOptions
from importhub.domain.imports.progress import (
    BatchProgress,
    Checkpoint,
    ProgressEvent,
    emit,
    noop_checkpoint,
)
from importhub.domain.imports.results import BatchImportResult, EntityImportResult, OverallStatus
from importhub.domain.imports.rollback import rollback_batch
from importhub.domain.jobs.events import JobProgressSink, ProgressBroker, publish_job
from importhub.domain.jobs.store import JobStore

logger = logging.getLogger(__name__)

InsightScheduler = Callable[[List[str], Optional[str]], List[str]]


@dataclass
class FileInput:
    file_name: str
    content: bytes
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchImportInputs:
    accounts: Optional[FileInput] = None
    products: Optional[FileInput] = None
    opportunities: Optional[FileInput] = None
    assets: List[AssetUpload] = field(default_factory=list)
    asset_options: Dict[str, Any] = field(default_factory=dict)

    def present(self) -> List[str]:
        entities = []
        for name in DEFAULT_PROCESS_ORDER:
            if name == "assets":
                if self.assets:
                    entities.append(name)
            elif getattr(self, name) is not None:
                entities.append(name)
        return entities

    def describe(self, entity: str) -> Optional[str]:
        if entity == "assets":
            return ", ".join(upload.file_name for upload in self.assets) or None
        file_input = getattr(self, entity, None)
        return file_input.file_name if file_input else None


class ImportOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        store: JobStore,
        importers: Dict[str, Any],
        *,
        broker: Optional[ProgressBroker] = None,
        insight_scheduler: Optional[InsightScheduler] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.store = store
        self.importers = importers
        self.broker = broker
        self.insight_scheduler = insight_scheduler
        self.job_queue = None

    # ------------------------------------------------------------------

    def execute_batch_import(
        self,
        inputs: BatchImportInputs,
        options: Any = None,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
        job_id: Optional[str] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> BatchImportResult:
        """
        Import every supplied entity in ``process_order``.

        When ``job_id`` is None the orchestrator creates and finalizes its own
        RUNNING job header; otherwise the caller (the job queue) owns the job
        lifecycle and only progress and stages are written here.

        Raises:
            OrchestrationError: no inputs, or an invalid process order.
            JobCancelled: the checkpoint reported a cancellation.
        """
        options = self._coerce_options(options)
        present = inputs.present()
        if not present:
            raise OrchestrationError("No import files provided")
        order = [entity for entity in options.process_order if entity in present]
        skipped = [entity for entity in present if entity not in order]

        owns_job = job_id is None
        if owns_job:
            job = self.store.create_job(
                "batch",
                options=options.model_dump(),
                status=JobStatus.RUNNING.value,
                stages=order,
                message="Starting batch import",
            )
            job_id = job["id"]
            publish_job(self.broker, job)

        checkpoint = checkpoint or noop_checkpoint
        started = time.perf_counter()
        result = BatchImportResult(job_id=job_id)
        for entity in skipped:
            result.warnings.append(f"{entity}: input ignored because it is not in process_order")

        progress = BatchProgress(job_id=job_id)
        progress.overall.total = len(order) + (1 if options.generate_insights else 0)
        job_sink = JobProgressSink(self.store, self.broker, job_id)

        def report() -> None:
            emit(job_sink, progress)
            emit(on_progress, progress)

        logger.info("Batch import %s starting: %s", job_id, order)
        failed = False
        try:
            for entity in order:
                checkpoint()
                progress.start_entity(entity)
                report()
                self._stage_started(job_id, entity)

                def forward(event: ProgressEvent) -> None:
                    progress.track(event)
                    emit(on_progress, progress)

                try:
                    entity_result = self._run_entity(entity, inputs, forward, checkpoint)
                except JobCancelled:
                    raise
                except Exception as exc:
                    message = getattr(exc, "message", None) or str(exc)
                    logger.error("Batch %s: %s import failed: %s", job_id, entity, message)
                    if isinstance(exc, EntityImportFailed) and exc.result is not None:
                        # Keep what was committed before the failure so rollback can find it.
                        entity_result = exc.result
                    else:
                        entity_result = EntityImportResult(entity=entity)
                        entity_result.add_error(message, file=inputs.describe(entity))
                    result.set_entity_result(entity, entity_result)
                    result.summary.absorb(entity_result)
                    result.errors.append(f"{entity}: {message}")
                    self._stage_finished(job_id, entity, success=False, error_message=message)
                    if not options.continue_on_error:
                        result.overall_status = OverallStatus.FAILED
                        failed = True
                        break
                    result.overall_status = OverallStatus.PARTIAL
                    progress.errors += 1
                    progress.complete_step()
                    report()
                    continue

                result.set_entity_result(entity, entity_result)
                result.summary.absorb(entity_result)
                progress.errors += len(entity_result.errors)
                progress.warnings += len(entity_result.warnings)
                self._stage_finished(job_id, entity, success=True)
                progress.complete_step()
                report()

            if not failed:
                if options.generate_insights:
                    checkpoint()
                    progress.stage = "insights"
                    self._schedule_insights(result, job_id)
                    progress.complete_step()
                    report()
                if options.validate_relationships:
                    self._validate_relationships(result)
        except JobCancelled:
            logger.info("Batch import %s cancelled", job_id)
            if owns_job:
                self._finalize_cancelled(job_id)
            raise
        except ImportHubError as exc:
            failed = True
            result.overall_status = OverallStatus.FAILED
            result.errors.append(exc.message)
        except Exception as exc:
            logger.exception("Batch import %s failed unexpectedly", job_id)
            failed = True
            result.overall_status = OverallStatus.FAILED
            result.errors.append(f"Unexpected error: {exc}")

        if failed and options.rollback_on_error:
            progress.stage = "rollback"
            emit(on_progress, progress)
            report_ = rollback_batch(self.session_factory, result)
            result.rolled_back = report_.succeeded
            result.errors.extend(report_.errors)

        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        progress.errors = max(progress.errors, len(result.errors))
        progress.warnings += len(result.warnings)
        if not failed:
            progress.finish()
        emit(on_progress, progress)

        if owns_job:
            self._finalize(job_id, result)
        logger.info(
            "Batch import %s finished: status=%s created=%d updated=%d failed=%d (%d ms)",
            job_id,
            result.overall_status.value,
            result.summary.total_created,
            result.summary.total_updated,
            result.summary.total_failed,
            result.processing_time_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Job delegation
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        return self.store.require_job(job_id)

    def cancel_job(self, job_id: str) -> Dict[str, Any]:
        if self.job_queue is not None:
            return self.job_queue.cancel(job_id)
        job = self.store.transition(job_id, JobStatus.CANCELLED.value, message="Cancelled")
        publish_job(self.broker, job)
        return job

    def import_stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        return self.store.stats(since)

    # ------------------------------------------------------------------

    def _coerce_options(self, options: Any) -> BatchImportOptions:
        if options is None:
            return BatchImportOptions()
        if isinstance(options, BatchImportOptions):
            return options
        try:
            return BatchImportOptions.model_validate(options)
        except ValidationError as exc:
            raise OrchestrationError(f"Invalid batch options: {exc.errors()[0].get('msg')}")

    def _run_entity(
        self,
        entity: str,
        inputs: BatchImportInputs,
        on_progress: Callable[[ProgressEvent], None],
        checkpoint: Checkpoint,
    ) -> EntityImportResult:
        importer = self.importers.get(entity)
        if importer is None:
            raise OrchestrationError(f"No importer registered for {entity}")
        if entity == "assets":
            return importer.import_assets(inputs.assets, inputs.asset_options, on_progress, checkpoint)
        file_input: FileInput = getattr(inputs, entity)
        return importer.import_file(
            file_input.content,
            file_input.file_name,
            file_input.options,
            on_progress,
            checkpoint,
        )

    def _schedule_insights(self, result: BatchImportResult, job_id: Optional[str]) -> None:
        accounts = result.accounts
        if accounts is None or not accounts.created_ids:
            return
        if self.insight_scheduler is None:
            result.warnings.append("insights: insight generation is not configured")
            return
        account_ids = accounts.created_ids[: self.settings.insight_account_limit]
        try:
            job_ids = self.insight_scheduler(account_ids, job_id)
        except Exception as exc:
            logger.warning("Scheduling insights for batch %s failed: %s", job_id, exc)
            result.warnings.append(f"insights: failed to schedule insight generation: {exc}")
            return
        result.follow_up_job_ids.extend(job_ids or [])
        logger.info("Scheduled insights for %d accounts (batch %s)", len(account_ids), job_id)

    def _validate_relationships(self, result: BatchImportResult) -> None:
        opportunities = result.opportunities
        if opportunities is None:
            return
        opportunity_ids = opportunities.created_ids + opportunities.updated_ids
        if not opportunity_ids:
            return
        touched = set(opportunities.related_created_ids.get("accounts", []))
        if result.accounts is not None:
            touched.update(result.accounts.created_ids)
            touched.update(result.accounts.updated_ids)
        try:
            with self.session_factory() as session:
                rows = (
                    session.query(Opportunity.opportunity_number, Opportunity.account_id)
                    .filter(Opportunity.id.in_(opportunity_ids))
                    .all()
                )
        except Exception as exc:
            result.warnings.append(f"relationships: validation failed: {exc}")
            return

        outside = [row.opportunity_number for row in rows if row.account_id not in touched]
        if outside:
            sample = ", ".join(outside[:5])
            result.warnings.append(
                f"opportunities: {len(outside)} opportunities reference accounts outside this batch ({sample})"
            )
        logger.info(
            "Relationship check: %d opportunities, %d outside batch accounts, %d product links",
            len(rows),
            len(outside),
            opportunities.stats.get("products_linked", 0),
        )

    def _stage_started(self, job_id: str, entity: str) -> None:
        try:
            self.store.start_stage(job_id, entity)
        except Exception as exc:  # pragma: no cover - stage rows are best effort
            logger.debug("Unable to start stage %s for job %s: %s", entity, job_id, exc)

    def _stage_finished(self, job_id: str, entity: str, *, success: bool, error_message: Optional[str] = None) -> None:
        try:
            self.store.finish_stage(job_id, entity, success=success, error_message=error_message)
        except Exception as exc:  # pragma: no cover - stage rows are best effort
            logger.debug("Unable to finish stage %s for job %s: %s", entity, job_id, exc)

    def _finalize(self, job_id: str, result: BatchImportResult) -> None:
        if result.overall_status == OverallStatus.FAILED:
            status = JobStatus.FAILED.value
            message = "Batch import failed"
            error_message = "; ".join(result.errors) or None
        else:
            status = JobStatus.COMPLETED.value
            message = "Completed with errors" if result.overall_status == OverallStatus.PARTIAL else "Completed"
            error_message = None
        job = self.store.transition(job_id, status, message=message, error_message=error_message, result=result)
        publish_job(self.broker, job)

    def _finalize_cancelled(self, job_id: str) -> None:
        try:
            job = self.store.transition(job_id, JobStatus.CANCELLED.value, message="Cancelled")
        except ImportHubError as exc:
            logger.debug("Job %s already finalized: %s", job_id, exc.message)
            return
        publish_job(self.broker, job)
