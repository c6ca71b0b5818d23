"""
Pytest configuration and fixtures for ImportHub tests.

Every test gets its own SQLite file so the persistence thread pools run
against a real database without any shared state between tests.
"""
import os

# The module-level app must not bootstrap a real database on import.
os.environ.setdefault("SKIP_DB_INIT", "1")

from typing import Dict, Iterable, List

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding

from importhub.core.config import Settings
from importhub.db.session import build_engine, create_session_factory, init_db
from importhub.services import build_services


def csv_bytes(rows: Iterable[Dict[str, object]], columns: List[str] = None) -> bytes:
    """Render rows as CSV; ``columns`` fixes the header order."""
    rows = list(rows)
    if columns is None:
        columns = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)
    lines = [",".join(columns)]
    for row in rows:
        cells = []
        for column in columns:
            value = row.get(column)
            text = "" if value is None else str(value)
            if "," in text or '"' in text:
                text = '"' + text.replace('"', '""') + '"'
            cells.append(text)
        lines.append(",".join(cells))
    return ("\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'importhub.db'}",
        persist_max_workers=4,
        job_backoff_seconds=0.05,
        job_pause_poll_seconds=0.01,
        job_heartbeat_interval_seconds=60,
        job_stall_timeout_seconds=120,
        anthropic_api_key="",
        embedding_model="",
        chunk_size=200,
        chunk_overlap=20,
        _env_file=None,
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def fake_embeddings():
    return DeterministicFakeEmbedding(size=8)


@pytest.fixture
def services(settings, engine):
    services = build_services(settings, engine, create_tables=False)
    yield services
    services.shutdown(wait=True)
