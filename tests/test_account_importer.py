"""
Tests for the account importer: validation, duplicate policies and the
advisory summary/vector post-processing.
"""
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from conftest import csv_bytes
from importhub.db.models import CompanyAccount, VectorChunk
from importhub.domain.imports.importers.accounts import AccountImporter
from importhub.integrations.ai import AccountSummarizer


@pytest.fixture
def importer(session_factory, settings):
    return AccountImporter(session_factory, settings)


def test_acme_scenario(importer):
    result = importer.import_rows([{"name": "Acme Corp", "domain": "acme.com"}, {"name": ""}])

    assert result.total == 2
    assert result.created == 1
    assert result.failed == 1
    assert len(result.errors) == 1
    assert result.errors[0].row == 2
    assert result.errors[0].message == "Account name is required"
    assert result.is_balanced()


def test_counts_balance_for_valid_and_invalid_rows(importer):
    rows = [
        {"Company Name": "Acme", "Domain": "acme.com"},
        {"Company Name": "", "Domain": "nobody.com"},
        {"Company Name": "Globex", "Domain": "globex.com"},
        {"Company Name": "x" * 300},
        {"Company Name": "Initech", "Website": "https://www.initech.com/"},
    ]
    result = importer.import_file(csv_bytes(rows), "accounts.csv")

    assert result.total == 5
    assert result.failed == 2
    assert result.created + result.updated + result.skipped + result.failed == 5
    assert {issue.row for issue in result.errors} == {2, 4}
    assert len(result.created_ids) == 3


def test_reimport_with_skip_duplicates_is_idempotent(importer, session_factory):
    content = csv_bytes([
        {"name": "Acme", "domain": "acme.com"},
        {"name": "Globex", "domain": "globex.com"},
        {"name": "Initech", "domain": "initech.com"},
    ])
    first = importer.import_file(content, "accounts.csv", {"skipDuplicates": True})
    second = importer.import_file(content, "accounts.csv", {"skip_duplicates": True})

    assert first.created == 3
    assert second.created == 0
    assert second.skipped == 3
    assert second.duplicates == 3
    with session_factory() as session:
        assert session.query(CompanyAccount).count() == 3


def test_duplicates_are_rejected_by_default(importer):
    importer.import_rows([{"name": "Acme", "domain": "acme.com"}])
    result = importer.import_rows([{"name": "Acme Corporation", "domain": "acme.com"}])

    assert result.failed == 1
    assert result.duplicates == 1
    assert result.errors[0].message == "Account already exists"


def test_update_existing_matches_by_case_insensitive_name(importer, session_factory):
    importer.import_rows([{"name": "Acme Corp", "industry": "Manufacturing"}])
    result = importer.import_rows(
        [{"name": "ACME CORP", "industry": "Robotics"}],
        {"update_existing": True},
    )

    assert result.updated == 1
    with session_factory() as session:
        accounts = session.query(CompanyAccount).all()
        assert len(accounts) == 1
        assert accounts[0].industry == "Robotics"
        assert accounts[0].account_number.startswith("ACC-")


def test_invalid_domain_is_warning_unless_validation_enabled(importer):
    lenient = importer.import_rows([{"name": "Acme", "domain": "not a domain"}])
    strict = importer.import_rows([{"name": "Globex", "domain": "bad domain"}], {"validate_domains": True})

    assert lenient.created == 1
    assert any("Invalid domain format" in issue.message for issue in lenient.warnings)
    assert strict.failed == 1
    assert "Invalid domain format" in strict.errors[0].message


def test_signal_columns_are_grouped_in_metadata(importer, session_factory):
    result = importer.import_rows([{"name": "Acme", "CC Intent": "high", "Region": "EMEA"}])

    with session_factory() as session:
        account = session.get(CompanyAccount, result.created_ids[0])
        assert account.extra_metadata == {"Region": "EMEA", "signals": {"CC Intent": "high"}}


def test_validate_file_is_a_dry_run(importer, session_factory):
    content = csv_bytes([{"name": "Acme"}, {"name": ""}])
    result = importer.validate_file(content, "accounts.csv")

    assert result.created == 0
    assert result.skipped == 1
    assert result.failed == 1
    with session_factory() as session:
        assert session.query(CompanyAccount).count() == 0


def test_progress_events_are_reported(importer):
    events = []
    importer.import_rows([{"name": f"Account {i}"} for i in range(5)], {"batch_size": 2}, events.append)

    stages = [event.stage for event in events]
    assert stages[0] == "validating"
    assert stages.count("importing") == 3
    assert stages[-1] == "completed"
    importing = [event.processed for event in events if event.stage == "importing"]
    assert importing == sorted(importing)
    assert importing[-1] == 5


def test_missing_providers_downgrade_to_warnings(importer):
    result = importer.import_rows([{"name": "Acme"}], {"generate_summaries": True, "store_vectors": True})

    assert result.created == 1
    messages = [issue.message for issue in result.warnings]
    assert "Summary provider not configured; account summaries skipped" in messages
    assert "Embedding provider not configured; account vectors not stored" in messages


def test_summaries_and_vectors_are_stored(session_factory, settings, fake_embeddings):
    llm = FakeListChatModel(responses=["Acme builds robots."])
    importer = AccountImporter(
        session_factory,
        settings,
        summarizer=AccountSummarizer(llm),
        embeddings=fake_embeddings,
    )
    result = importer.import_rows(
        [{"name": "Acme", "industry": "Robotics", "description": "Industrial automation"}],
        {"generate_summaries": True, "store_vectors": True},
    )

    assert result.stats["summaries_generated"] == 1
    assert result.stats["vectors_stored"] >= 1
    account_id = result.created_ids[0]
    with session_factory() as session:
        assert session.get(CompanyAccount, account_id).summary == "Acme builds robots."
        chunks = session.query(VectorChunk).filter(VectorChunk.owner_id == account_id).all()
        assert chunks
        assert all(len(chunk.embedding) == 8 for chunk in chunks)


def test_summary_failure_is_advisory(session_factory, settings):
    class BrokenSummarizer:
        def summarize_account(self, account):
            raise RuntimeError("provider down")

    importer = AccountImporter(session_factory, settings, summarizer=BrokenSummarizer())
    result = importer.import_rows([{"name": "Acme"}], {"generate_summaries": True})

    assert result.created == 1
    assert result.failed == 0
    assert any("provider down" in issue.message for issue in result.warnings)
