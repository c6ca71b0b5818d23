"""
Explicit wiring of the import services.

``build_services`` constructs every component once and hands each its
collaborators; nothing below is a module-level singleton. The FastAPI app
keeps the returned ``Services`` on ``app.state``; tests build their own.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from importhub.core.config import Settings
from importhub.db.models import AccountInsight, CompanyAccount
from importhub.db.session import build_engine, create_session_factory, init_db
from importhub.domain.imports.errors import DependencyUnavailable, JobFailed
from importhub.domain.imports.importers.accounts import AccountImporter
from importhub.domain.imports.importers.assets import AssetImporter
from importhub.domain.imports.importers.opportunities import OpportunityImporter
from importhub.domain.imports.importers.products import ProductImporter
from importhub.domain.imports.orchestrator import BatchImportInputs, FileInput, ImportOrchestrator
from importhub.domain.imports.processors.documents import DocumentParser
from importhub.domain.imports.processors.tabular import TabularParser
from importhub.domain.imports.progress import ProgressEvent
from importhub.domain.imports.results import OverallStatus
from importhub.domain.jobs.events import ProgressBroker
from importhub.domain.jobs.queue import JobContext, JobQueue
from importhub.domain.jobs.store import JobStore
from importhub.integrations.ai import (
    AccountSummarizer,
    InsightGenerator,
    account_profile,
    build_chat_model,
    build_embeddings,
)
from importhub.utils.locks import KeyLockManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    store: JobStore
    broker: ProgressBroker
    queue: JobQueue
    orchestrator: ImportOrchestrator
    importers: Dict[str, Any] = field(default_factory=dict)
    insight_generator: Optional[InsightGenerator] = None

    def start(self) -> None:
        self.queue.start()

    def shutdown(self, wait: bool = True) -> None:
        self.queue.shutdown(wait=wait)


def build_services(
    settings: Settings,
    engine: Optional[Engine] = None,
    *,
    chat_model: Optional[BaseChatModel] = None,
    embeddings: Optional[Embeddings] = None,
    tabular_parser: Optional[TabularParser] = None,
    document_parser: Optional[DocumentParser] = None,
    create_tables: bool = True,
) -> Services:
    """
    Construct the importers, orchestrator and job queue around one engine.

    ``chat_model`` and ``embeddings`` default to the providers configured in
    ``settings``; either may be None, in which case summaries, insights and
    vectors are skipped with a warning.
    """
    engine = engine or build_engine(settings.database_url)
    if create_tables:
        init_db(engine)
    session_factory = create_session_factory(engine)

    if chat_model is None:
        chat_model = build_chat_model(settings)
    if embeddings is None:
        embeddings = build_embeddings(settings)
    tabular_parser = tabular_parser or TabularParser()
    document_parser = document_parser or DocumentParser(tabular_parser)
    key_locks = KeyLockManager()

    summarizer = AccountSummarizer(chat_model) if chat_model is not None else None
    insight_generator = InsightGenerator(chat_model, settings.llm_model) if chat_model is not None else None

    importers: Dict[str, Any] = {
        "accounts": AccountImporter(
            session_factory, settings,
            summarizer=summarizer, embeddings=embeddings,
            tabular_parser=tabular_parser, key_locks=key_locks,
        ),
        "products": ProductImporter(
            session_factory, settings, tabular_parser=tabular_parser, key_locks=key_locks,
        ),
        "opportunities": OpportunityImporter(
            session_factory, settings, tabular_parser=tabular_parser, key_locks=key_locks,
        ),
        "assets": AssetImporter(
            session_factory, settings, document_parser=document_parser, embeddings=embeddings,
        ),
    }

    store = JobStore(session_factory)
    broker = ProgressBroker()
    queue = JobQueue(store, settings, broker)
    orchestrator = ImportOrchestrator(
        session_factory,
        settings,
        store,
        importers,
        broker=broker,
    )
    orchestrator.job_queue = queue

    def schedule_insights(account_ids: List[str], parent_job_id: Optional[str]) -> List[str]:
        job_id = queue.submit(
            "insights",
            {"account_ids": list(account_ids), "parent_job_id": parent_job_id},
            {"account_count": len(account_ids), "parent_job_id": parent_job_id},
            message=f"Queued insights for {len(account_ids)} accounts",
        )
        return [job_id]

    orchestrator.insight_scheduler = schedule_insights

    services = Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        broker=broker,
        queue=queue,
        orchestrator=orchestrator,
        importers=importers,
        insight_generator=insight_generator,
    )
    _register_handlers(services)
    return services


def _register_handlers(services: Services) -> None:
    queue = services.queue
    for entity in ("accounts", "products", "opportunities"):
        queue.register(entity, _entity_handler(services.importers[entity]))
    queue.register("assets", _asset_handler(services.importers["assets"]))
    queue.register("batch", _batch_handler(services.orchestrator))
    queue.register("insights", _insight_handler(services))


def _entity_handler(importer):
    def handle(context: JobContext):
        payload: FileInput = context.payload
        return importer.import_file(
            payload.content,
            payload.file_name,
            payload.options or context.options,
            context.progress,
            context.checkpoint,
        )

    return handle


def _asset_handler(importer: AssetImporter):
    def handle(context: JobContext):
        return importer.import_assets(context.payload, context.options, context.progress, context.checkpoint)

    return handle


def _batch_handler(orchestrator: ImportOrchestrator):
    def handle(context: JobContext):
        inputs: BatchImportInputs = context.payload
        result = orchestrator.execute_batch_import(
            inputs,
            context.options,
            job_id=context.job_id,
            checkpoint=context.checkpoint,
        )
        if result.overall_status == OverallStatus.FAILED:
            raise JobFailed("; ".join(result.errors) or "Batch import failed", result=result)
        return result

    return handle


def _insight_handler(services: Services):
    def handle(context: JobContext):
        generator = services.insight_generator
        if generator is None:
            raise JobFailed("Insight generation requires ANTHROPIC_API_KEY")

        account_ids: List[str] = context.payload.get("account_ids", [])
        generated: List[str] = []
        failures: List[Dict[str, str]] = []
        for index, account_id in enumerate(account_ids):
            context.checkpoint()
            with services.session_factory() as session:
                account = session.get(CompanyAccount, account_id)
                profile = account_profile(account) if account is not None else None
            if profile is None:
                failures.append({"account_id": account_id, "error": "Account not found"})
                continue
            try:
                content = generator.generate(profile)
            except Exception as exc:
                logger.warning("Insight generation failed for account %s: %s", account_id, exc)
                failures.append({"account_id": account_id, "error": str(exc)})
                continue
            with services.session_factory() as session:
                session.add(AccountInsight(
                    account_id=account_id,
                    job_id=context.job_id,
                    source="import",
                    content=content,
                    model=generator.model_name,
                ))
                session.commit()
            generated.append(account_id)
            context.progress(ProgressEvent(
                stage="insights",
                processed=index + 1,
                total=len(account_ids),
                current_item=account_id,
                errors=len(failures),
            ))

        if account_ids and not generated:
            raise DependencyUnavailable("llm", f"No insights generated: {failures[0]['error']}")
        return {"generated": len(generated), "account_ids": generated, "failures": failures}

    return handle
