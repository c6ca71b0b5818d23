"""
End-to-end runs through the wired services: queued imports and the
follow-up insight job.
"""
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from conftest import csv_bytes
from importhub.db.models import AccountInsight, CompanyAccount, JobStatus
from importhub.domain.imports.errors import DependencyUnavailable
from importhub.domain.imports.orchestrator import BatchImportInputs, FileInput
from importhub.services import build_services

ACCOUNTS = csv_bytes([
    {"name": "Acme Corp", "industry": "Manufacturing"},
    {"name": "Globex", "industry": "Energy"},
])


@pytest.fixture
def ai_services(settings, engine):
    chat_model = FakeListChatModel(responses=["Expand the wireless footprint before renewal."])
    services = build_services(settings, engine, chat_model=chat_model, create_tables=False)
    yield services
    services.shutdown(wait=True)


def test_queued_entity_import(services):
    job_id = services.queue.submit("accounts", FileInput("accounts.csv", ACCOUNTS, {"skip_duplicates": True}))

    job = services.queue.wait_for(job_id, timeout=10)
    assert job["status"] == JobStatus.COMPLETED.value
    assert job["result"]["entity"] == "accounts"
    assert job["result"]["created"] == 2
    with services.session_factory() as session:
        assert session.query(CompanyAccount).count() == 2


def test_queued_batch_failure_is_not_retried(services, monkeypatch):
    def explode(*args, **kwargs):
        raise DependencyUnavailable("tabular-parser", "unreadable workbook")

    monkeypatch.setattr(services.importers["products"], "import_file", explode)
    inputs = BatchImportInputs(
        accounts=FileInput("accounts.csv", ACCOUNTS),
        products=FileInput("products.xlsx", b"not a workbook"),
    )

    job_id = services.queue.submit("batch", inputs, {}, stages=inputs.present())
    job = services.queue.wait_for(job_id, timeout=10)

    assert job["status"] == JobStatus.FAILED.value
    assert job["attempts"] == 1
    assert job["error_message"] == "products: unreadable workbook"
    assert job["result"]["overall_status"] == "failed"
    assert job["result"]["accounts"]["created"] == 2


def test_batch_schedules_insight_job(ai_services):
    inputs = BatchImportInputs(accounts=FileInput("accounts.csv", ACCOUNTS))
    result = ai_services.orchestrator.execute_batch_import(inputs, {"generate_insights": True})

    assert len(result.follow_up_job_ids) == 1
    insight_job = ai_services.queue.wait_for(result.follow_up_job_ids[0], timeout=10)
    assert insight_job["type"] == "insights"
    assert insight_job["status"] == JobStatus.COMPLETED.value
    assert insight_job["options"]["parent_job_id"] == result.job_id
    assert insight_job["result"]["generated"] == 2
    assert insight_job["result"]["failures"] == []

    with ai_services.session_factory() as session:
        insights = session.query(AccountInsight).all()
        assert {insight.account_id for insight in insights} == set(result.accounts.created_ids)
        assert all(insight.job_id == insight_job["id"] for insight in insights)
        assert insights[0].content == "Expand the wireless footprint before renewal."


def test_insight_job_without_model_fails_once(services):
    job_id = services.queue.submit("insights", {"account_ids": ["missing"]})

    job = services.queue.wait_for(job_id, timeout=10)
    assert job["status"] == JobStatus.FAILED.value
    assert job["attempts"] == 1
    assert job["error_message"] == "Insight generation requires ANTHROPIC_API_KEY"
