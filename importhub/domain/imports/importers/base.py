"""
Shared pipeline for entity importers.

parse -> alias normalization -> coercion -> validation -> match by natural key
-> persist in fixed-size batches -> post-processing.

Row-level problems never escape this module: validation failures and
per-record persistence failures become structured issues on the
``EntityImportResult``. Only whole-file problems (``DependencyUnavailable``)
and cancellation (``JobCancelled``) propagate. An unexpected error once
batches are being written surfaces as ``EntityImportFailed`` carrying the
partial result, so callers can still undo what was committed.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from importhub.core.config import Settings
from importhub.domain.imports.errors import (
    EntityImportFailed,
    JobCancelled,
    PersistenceError,
    RowValidationError,
)
from importhub.domain.imports.mapper import FieldAliasMapper, MappedRow
from importhub.domain.imports.options import DuplicatePolicy, ImportOptionsBase
from importhub.domain.imports.processors.tabular import TabularParser
from importhub.domain.imports.progress import (
    Checkpoint,
    ProgressEvent,
    ProgressSink,
    emit,
    noop_checkpoint,
)
from importhub.domain.imports.results import EntityImportResult
from importhub.utils.locks import KeyLockManager

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class PreparedRecord:
    """A row that passed validation and is ready to be matched and persisted."""
    row: int
    values: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None


@dataclass
class RecordOutcome:
    row: int
    action: str
    label: Optional[str] = None
    record_id: Optional[str] = None
    duplicate: bool = False
    message: Optional[str] = None
    warnings: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    related_created: Dict[str, List[str]] = field(default_factory=dict)
    superseded_ids: List[str] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    def warn(self, message: str, field_name: Optional[str] = None) -> None:
        self.warnings.append((message, field_name))

    def bump(self, stat: str, amount: int = 1) -> None:
        self.stats[stat] = self.stats.get(stat, 0) + amount


class EntityImporter:
    """
    Template for the account, product and opportunity importers.

    Subclasses provide the alias rules, ``validate``, ``find_existing``,
    ``create_record`` and ``update_record``; everything about batching,
    locking, counting and progress lives here.
    """

    entity: str = ""
    label: str = ""
    options_model: Type[ImportOptionsBase] = ImportOptionsBase
    rules: Sequence[Tuple[str, str]] = ()
    field_types: Dict[str, str] = {}
    batch_size_setting: str = ""

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        *,
        tabular_parser: Optional[TabularParser] = None,
        key_locks: Optional[KeyLockManager] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.tabular_parser = tabular_parser or TabularParser()
        self.key_locks = key_locks or KeyLockManager()
        self.mapper = FieldAliasMapper(
            self.rules,
            self.field_types,
            dayfirst_default=settings.date_default_dayfirst,
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def coerce_options(self, options: Any) -> ImportOptionsBase:
        if options is None:
            return self.options_model()
        if isinstance(options, self.options_model):
            return options
        if isinstance(options, BaseModel):
            return self.options_model.model_validate(options.model_dump())
        return self.options_model.model_validate(options)

    def import_file(
        self,
        file_content: bytes,
        file_name: str,
        options: Any = None,
        on_progress: Optional[ProgressSink] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> EntityImportResult:
        emit(on_progress, ProgressEvent(stage="parsing", current_item=file_name))
        rows = self.tabular_parser.parse(file_content, file_name)
        return self.import_rows(rows, options, on_progress, checkpoint, file_name=file_name)

    def import_rows(
        self,
        rows: Sequence[Dict[str, Any]],
        options: Any = None,
        on_progress: Optional[ProgressSink] = None,
        checkpoint: Optional[Checkpoint] = None,
        *,
        file_name: Optional[str] = None,
    ) -> EntityImportResult:
        options = self.coerce_options(options)
        checkpoint = checkpoint or noop_checkpoint
        started = time.perf_counter()
        total = len(rows)
        result = EntityImportResult(entity=self.entity, total=total)

        checkpoint()
        emit(on_progress, ProgressEvent(stage="validating", processed=0, total=total, current_item=file_name))
        prepared = self._prepare(rows, options, result, file_name)
        processed = result.failed

        batch_size = options.batch_size or getattr(self.settings, self.batch_size_setting, 50)
        delay_seconds = self.settings.inter_batch_delay_ms / 1000.0
        try:
            for start in range(0, len(prepared), batch_size):
                checkpoint()
                batch = prepared[start:start + batch_size]
                outcomes, failure = self._persist_batch(batch, options)
                for outcome in outcomes:
                    self._apply_outcome(result, outcome, file_name)
                if failure is not None:
                    raise failure
                processed += len(batch)
                emit(on_progress, ProgressEvent(
                    stage="importing",
                    processed=processed,
                    total=total,
                    current_item=batch[-1].label,
                    errors=len(result.errors),
                    warnings=len(result.warnings),
                ))
                if delay_seconds and start + batch_size < len(prepared):
                    time.sleep(delay_seconds)
        except JobCancelled:
            raise
        except Exception as exc:
            raise self._stopped(result, exc, started, file_name) from exc

        checkpoint()
        if result.created_ids or result.updated_ids:
            emit(on_progress, ProgressEvent(stage="post-processing", processed=processed, total=total))
            self.post_process(result, options, checkpoint)

        result.sort_issues()
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        emit(on_progress, ProgressEvent(
            stage="completed",
            processed=total,
            total=total,
            errors=len(result.errors),
            warnings=len(result.warnings),
        ))
        logger.info(
            "%s import finished: total=%d created=%d updated=%d skipped=%d failed=%d (%d ms)",
            self.label,
            result.total,
            result.created,
            result.updated,
            result.skipped,
            result.failed,
            result.processing_time_ms,
        )
        return result

    def validate_file(
        self,
        file_content: bytes,
        file_name: str,
        options: Any = None,
    ) -> EntityImportResult:
        """Dry run: parse, normalize and validate without touching the store."""
        options = self.coerce_options(options)
        started = time.perf_counter()
        rows = self.tabular_parser.parse(file_content, file_name)
        result = EntityImportResult(entity=self.entity, total=len(rows))
        prepared = self._prepare(rows, options, result, file_name)
        result.skipped = len(prepared)
        result.sort_issues()
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        return result

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def normalize(self, mapped: MappedRow, options: ImportOptionsBase) -> Dict[str, Any]:
        return dict(mapped.values)

    def validate(
        self, values: Dict[str, Any], options: ImportOptionsBase
    ) -> Tuple[List[str], List[str]]:
        """Return ``(errors, warnings)`` for one normalized row."""
        return [], []

    def describe(self, values: Dict[str, Any], row: int) -> str:
        return f"Row {row}"

    def lock_keys(self, record: PreparedRecord) -> List[str]:
        return []

    def find_existing(self, session: Session, record: PreparedRecord) -> Any:
        raise NotImplementedError

    def create_record(
        self, session: Session, record: PreparedRecord, options: ImportOptionsBase, outcome: RecordOutcome
    ) -> Any:
        raise NotImplementedError

    def update_record(
        self, session: Session, existing: Any, record: PreparedRecord,
        options: ImportOptionsBase, outcome: RecordOutcome,
    ) -> Any:
        raise NotImplementedError

    def post_process(
        self, result: EntityImportResult, options: ImportOptionsBase, checkpoint: Checkpoint
    ) -> None:
        """Optional enrichment after all batches are persisted; failures must become warnings."""
        return None

    # ------------------------------------------------------------------
    # Pipeline internals
    # ------------------------------------------------------------------

    def _prepare(
        self,
        rows: Sequence[Dict[str, Any]],
        options: ImportOptionsBase,
        result: EntityImportResult,
        file_name: Optional[str],
    ) -> List[PreparedRecord]:
        prepared: List[PreparedRecord] = []
        for index, raw in enumerate(rows):
            row_number = index + 1
            mapped = self.mapper.map_row(raw or {}, row_number)
            values = self.normalize(mapped, options)
            label = self.describe(values, row_number)
            for issue in mapped.issues:
                result.add_warning(issue["message"], row=row_number, file=file_name,
                                   field=issue.get("field"), item=label)

            errors, warnings = self.validate(values, options)
            for message in warnings:
                result.add_warning(message, row=row_number, file=file_name, item=label)
            if errors:
                result.failed += 1
                for message in errors:
                    result.add_error(message, row=row_number, file=file_name, item=label)
                continue
            prepared.append(PreparedRecord(row=row_number, values=values, metadata=mapped.metadata, label=label))
        return prepared

    def _persist_batch(
        self, batch: List[PreparedRecord], options: ImportOptionsBase
    ) -> Tuple[List[RecordOutcome], Optional[Exception]]:
        """
        Persist one batch. Returns the outcomes of the records that were
        written and the first unexpected error, if any, so committed records
        are still accounted for when the import stops.
        """
        outcomes: List[RecordOutcome] = []
        if not batch:
            return outcomes, None
        max_workers = max(1, min(self.settings.persist_max_workers, len(batch)))
        if max_workers == 1:
            for record in batch:
                try:
                    outcomes.append(self._persist_one(record, options))
                except Exception as exc:
                    return outcomes, exc
            return outcomes, None
        failure: Optional[Exception] = None
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"persist-{self.entity}") as executor:
            futures = [executor.submit(self._persist_one, record, options) for record in batch]
            for future in futures:
                try:
                    outcomes.append(future.result())
                except Exception as exc:
                    if failure is None:
                        failure = exc
        return outcomes, failure

    def _stopped(
        self, result: EntityImportResult, exc: Exception, started: float, file_name: Optional[str]
    ) -> EntityImportFailed:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        logger.error(
            "%s import stopped after %d created, %d updated: %s",
            self.label, result.created, result.updated, message,
        )
        result.add_error(message, file=file_name)
        result.sort_issues()
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        return EntityImportFailed(self.entity, message, result)

    def _persist_one(self, record: PreparedRecord, options: ImportOptionsBase) -> RecordOutcome:
        outcome = RecordOutcome(row=record.row, action=FAILED, label=record.label)
        with ExitStack() as stack:
            # Sorted acquisition keeps multi-key locking deadlock free.
            for key in sorted(set(self.lock_keys(record))):
                stack.enter_context(self.key_locks.acquire(key))
            session = self.session_factory()
            try:
                self._match_and_write(session, record, options, outcome)
                session.commit()
            except RowValidationError as exc:
                session.rollback()
                return self._failed(record, exc.message)
            except IntegrityError as exc:
                session.rollback()
                error = PersistenceError(
                    f"{self.label} conflicts with an existing record: {exc.orig}",
                    row=record.row,
                    item=record.label,
                )
                logger.warning("Row %s: %s", record.row, error.message)
                return self._failed(record, error.message, duplicate=True)
            except SQLAlchemyError as exc:
                session.rollback()
                error = PersistenceError(f"Failed to save {self.label.lower()}: {exc}", row=record.row,
                                         item=record.label)
                logger.error("Row %s: %s", record.row, error.message)
                return self._failed(record, error.message)
            finally:
                session.close()
        return outcome

    def _match_and_write(
        self, session: Session, record: PreparedRecord, options: ImportOptionsBase, outcome: RecordOutcome
    ) -> None:
        existing = self.find_existing(session, record)
        if existing is None:
            created = self.create_record(session, record, options, outcome)
            session.flush()
            outcome.action = CREATED
            outcome.record_id = created.id
            return

        policy = options.duplicate_policy
        if policy is DuplicatePolicy.UPDATE:
            updated = self.update_record(session, existing, record, options, outcome)
            session.flush()
            outcome.record_id = updated.id
            if outcome.action != CREATED:
                outcome.action = UPDATED
        elif policy is DuplicatePolicy.SKIP:
            outcome.action = SKIPPED
            outcome.duplicate = True
            outcome.record_id = existing.id
        else:
            outcome.action = FAILED
            outcome.duplicate = True
            outcome.message = f"{self.label} already exists"

    def _failed(self, record: PreparedRecord, message: str, *, duplicate: bool = False) -> RecordOutcome:
        return RecordOutcome(row=record.row, action=FAILED, label=record.label, message=message,
                             duplicate=duplicate)

    def _apply_outcome(self, result: EntityImportResult, outcome: RecordOutcome, file_name: Optional[str]) -> None:
        for message, field_name in outcome.warnings:
            result.add_warning(message, row=outcome.row, file=file_name, field=field_name, item=outcome.label)
        if outcome.action == FAILED:
            result.failed += 1
            result.add_error(outcome.message or f"Failed to import {self.label.lower()}",
                             row=outcome.row, file=file_name, item=outcome.label)
            if outcome.duplicate:
                result.duplicates += 1
            return

        if outcome.action == CREATED:
            result.created += 1
            result.created_ids.append(outcome.record_id)
        elif outcome.action == UPDATED:
            result.updated += 1
            result.updated_ids.append(outcome.record_id)
        elif outcome.action == SKIPPED:
            result.skipped += 1
            if outcome.duplicate:
                result.duplicates += 1

        result.superseded_ids.extend(outcome.superseded_ids)
        for entity, ids in outcome.related_created.items():
            for record_id in ids:
                result.add_related(entity, record_id)
        for stat, amount in outcome.stats.items():
            result.bump(stat, amount)


def run_advisory(result: EntityImportResult, label: str, action: Callable[[], Any]) -> Any:
    """Run an enrichment step; any failure is downgraded to a warning on ``result``."""
    try:
        return action()
    except Exception as exc:
        logger.warning("%s failed: %s", label, exc)
        result.add_warning(f"{label} failed: {exc}")
        return None
