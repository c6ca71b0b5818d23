"""
Asset (document) importer.

Every upload becomes a ``documents`` row that moves through
UPLOADED -> PARSING -> CHUNKING -> VECTORIZING -> PROCESSED, or FAILED with the
captured error. Uploads in one batch are processed concurrently; a failure
only affects its own file.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.embeddings import Embeddings
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from importhub.core.config import Settings
from importhub.db.models import Document, DocumentStatus
from importhub.domain.imports.chunking import chunk_text, embed_chunks, replace_chunk_vectors
from importhub.domain.imports.errors import EntityImportFailed, JobCancelled
from importhub.domain.imports.importers.base import CREATED, FAILED, RecordOutcome
from importhub.domain.imports.options import AssetImportOptions
from importhub.domain.imports.processors.documents import (
    SUPPORTED_MIME_TYPES,
    DocumentParser,
    ParsedDocument,
    file_type_for,
)
from importhub.domain.imports.progress import Checkpoint, ProgressEvent, ProgressSink, emit, noop_checkpoint
from importhub.domain.imports.results import EntityImportResult

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS = [
    (("case study", "customer story"), "Case Study", "CASE_STUDIES"),
    (("data sheet", "specification"), "Data Sheet", "DATA_SHEETS"),
    (("proposal", "quotation"), "Proposal", "PROPOSALS"),
    (("training", "tutorial"), "Training Material", "TRAINING"),
    (("technical", "manual"), "Technical Documentation", "TECHNICAL_DOCS"),
]


@dataclass
class AssetUpload:
    file_name: str
    content: bytes
    mime_type: str
    title: Optional[str] = None
    category: Optional[str] = None
    account_id: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


def detect_category(text: str) -> Optional[tuple]:
    lowered = text.lower()
    for keywords, category, scope in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category, scope
    return None


def title_from(document: ParsedDocument) -> Optional[str]:
    first_line = document.first_line()
    if first_line and 5 < len(first_line) < 100:
        return first_line
    return None


class AssetImporter:
    entity = "assets"
    label = "Asset"

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        *,
        document_parser: Optional[DocumentParser] = None,
        embeddings: Optional[Embeddings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.document_parser = document_parser or DocumentParser()
        self.embeddings = embeddings

    def coerce_options(self, options: Any) -> AssetImportOptions:
        if options is None:
            return AssetImportOptions()
        if isinstance(options, AssetImportOptions):
            return options
        if isinstance(options, BaseModel):
            return AssetImportOptions.model_validate(options.model_dump())
        return AssetImportOptions.model_validate(options)

    def import_assets(
        self,
        uploads: Sequence[AssetUpload],
        options: Any = None,
        on_progress: Optional[ProgressSink] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> EntityImportResult:
        options = self.coerce_options(options)
        checkpoint = checkpoint or noop_checkpoint
        started = time.perf_counter()
        total = len(uploads)
        result = EntityImportResult(entity=self.entity, total=total)

        if options.store_vectors and self.embeddings is None:
            result.add_warning("Embedding provider not configured; document vectors not stored")

        batch_size = options.batch_size or self.settings.asset_batch_size
        processed = 0
        try:
            for start in range(0, total, batch_size):
                checkpoint()
                batch = list(uploads[start:start + batch_size])
                failure = self._process_batch(result, batch, options)
                if failure is not None:
                    raise failure
                processed += len(batch)
                emit(on_progress, ProgressEvent(
                    stage="importing",
                    processed=processed,
                    total=total,
                    current_item=batch[-1].file_name,
                    errors=len(result.errors),
                    warnings=len(result.warnings),
                ))
        except JobCancelled:
            raise
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            logger.error("Asset import stopped after %d documents: %s", result.created, message)
            result.add_error(message)
            result.processing_time_ms = int((time.perf_counter() - started) * 1000)
            raise EntityImportFailed(self.entity, message, result) from exc

        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        emit(on_progress, ProgressEvent(stage="completed", processed=total, total=total,
                                        errors=len(result.errors), warnings=len(result.warnings)))
        logger.info(
            "Asset import finished: total=%d created=%d failed=%d (%d ms)",
            result.total, result.created, result.failed, result.processing_time_ms,
        )
        return result

    def _process_batch(
        self, result: EntityImportResult, batch: List[AssetUpload], options: AssetImportOptions
    ) -> Optional[Exception]:
        """Process uploads concurrently; returns the first unexpected error after recording the rest."""
        failure: Optional[Exception] = None
        max_workers = max(1, min(self.settings.persist_max_workers, len(batch)))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="assets") as executor:
            futures = [executor.submit(self._process_upload, upload, options) for upload in batch]
            for upload, future in zip(batch, futures):
                try:
                    outcome = future.result()
                except Exception as exc:
                    if failure is None:
                        failure = exc
                    continue
                self._apply_outcome(result, upload, outcome)
        return failure

    def validate_upload(self, upload: AssetUpload, options: AssetImportOptions) -> List[str]:
        errors = []
        if not upload.file_name or not upload.file_name.strip():
            errors.append("File name is required")
        max_size = options.max_file_size or self.settings.asset_max_file_size_mb * 1024 * 1024
        if upload.size > max_size:
            errors.append(f"File size exceeds maximum allowed ({max_size // (1024 * 1024)} MB)")
        if upload.size == 0:
            errors.append("File is empty")
        allowed = options.allowed_mime_types or list(SUPPORTED_MIME_TYPES)
        if upload.mime_type not in allowed:
            errors.append(f"Unsupported file type: {upload.mime_type}")
        return errors

    def _process_upload(self, upload: AssetUpload, options: AssetImportOptions) -> RecordOutcome:
        outcome = RecordOutcome(row=0, action=FAILED, label=upload.file_name)
        errors = self.validate_upload(upload, options)
        if errors:
            outcome.message = "; ".join(errors)
            return outcome

        with self.session_factory() as session:
            document = Document(
                file_name=upload.file_name,
                original_name=upload.file_name,
                file_size=upload.size,
                file_type=file_type_for(upload.mime_type),
                mime_type=upload.mime_type,
                status=DocumentStatus.UPLOADED.value,
                title=upload.title,
                category=upload.category,
                account_id=upload.account_id,
            )
            session.add(document)
            session.commit()
            document_id = document.id
        outcome.record_id = document_id

        try:
            self._run_stages(document_id, upload, options, outcome)
        except Exception as exc:
            logger.warning("Processing %s failed: %s", upload.file_name, exc)
            self._set_status(document_id, DocumentStatus.FAILED, error_message=str(exc))
            outcome.action = FAILED
            outcome.message = f"Failed to process {upload.file_name}: {getattr(exc, 'message', exc)}"
            return outcome

        outcome.action = CREATED
        return outcome

    def _run_stages(
        self, document_id: str, upload: AssetUpload, options: AssetImportOptions, outcome: RecordOutcome
    ) -> None:
        self._set_status(document_id, DocumentStatus.PARSING)
        parsed = self.document_parser.parse(upload.content, upload.file_name, upload.mime_type)
        updates: Dict[str, Any] = {"total_blocks": len(parsed.blocks)}
        if not upload.title:
            title = title_from(parsed)
            if title:
                updates["title"] = title
        if options.detect_category and not upload.category:
            detected = detect_category(parsed.text)
            if detected:
                updates["category"], updates["scope"] = detected
        self._set_status(document_id, DocumentStatus.PARSING, **updates)

        if options.generate_chunks or options.store_vectors:
            self._set_status(document_id, DocumentStatus.CHUNKING)
            metadata = {"file_name": upload.file_name}
            if options.store_vectors and self.embeddings is not None:
                self._set_status(document_id, DocumentStatus.VECTORIZING)
                embedded = embed_chunks(
                    self.embeddings,
                    parsed.text,
                    chunk_size=self.settings.chunk_size,
                    overlap=self.settings.chunk_overlap,
                )
                outcome.bump("vectors_stored", len(embedded))
            else:
                chunks = chunk_text(parsed.text, self.settings.chunk_size, self.settings.chunk_overlap)
                embedded = [(chunk, None) for chunk in chunks]
            with self.session_factory() as session:
                stored = replace_chunk_vectors(session, "document", document_id, embedded, metadata)
                document = session.get(Document, document_id)
                document.total_chunks = stored
                session.commit()
            outcome.bump("chunks_generated", stored)

        self._set_status(document_id, DocumentStatus.PROCESSED, processed_at=datetime.now(timezone.utc))

    def _set_status(self, document_id: str, status: DocumentStatus, **fields: Any) -> None:
        with self.session_factory() as session:
            document = session.get(Document, document_id)
            document.status = status.value
            for name, value in fields.items():
                setattr(document, name, value)
            session.commit()

    def _apply_outcome(self, result: EntityImportResult, upload: AssetUpload, outcome: RecordOutcome) -> None:
        for message, field_name in outcome.warnings:
            result.add_warning(message, file=upload.file_name, field=field_name)
        if outcome.action == CREATED:
            result.created += 1
            result.created_ids.append(outcome.record_id)
        else:
            result.failed += 1
            result.add_error(outcome.message or "Failed to import asset", file=upload.file_name)
            if outcome.record_id:
                # The FAILED row stays for inspection but still belongs to this run.
                result.add_related("documents", outcome.record_id)
        for stat, amount in outcome.stats.items():
            result.bump(stat, amount)
