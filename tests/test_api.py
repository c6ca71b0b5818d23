"""
HTTP surface tests against an app wired to per-test services.
"""
import json

import pytest
from fastapi.testclient import TestClient

from conftest import csv_bytes
from importhub.db.models import CompanyAccount, JobStatus
from importhub.main import create_app

ACCOUNTS_CSV = csv_bytes([
    {"account_number": "ACC-1", "name": "Acme Corp", "domain": "acme.com"},
    {"account_number": "ACC-2", "name": "Globex", "domain": "globex.com"},
])
PRODUCTS_CSV = csv_bytes([{"item_number": "SKU-1", "cost": "10"}])


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _csv(name, content):
    return (name, content, "text/csv")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_services_missing_returns_503(monkeypatch):
    monkeypatch.setenv("SKIP_DB_INIT", "1")
    with TestClient(create_app()) as test_client:
        response = test_client.get("/import/jobs")
    assert response.status_code == 503


def test_import_accounts(client, services):
    response = client.post(
        "/import/accounts",
        files={"file": _csv("accounts.csv", ACCOUNTS_CSV)},
        data={"options_json": json.dumps({"skipDuplicates": True})},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["entity"] == "accounts"
    assert body["created"] == 2
    assert body["failed"] == 0
    with services.session_factory() as session:
        assert session.query(CompanyAccount).count() == 2


def test_unknown_entity_returns_404(client):
    response = client.post("/import/invoices", files={"file": _csv("invoices.csv", b"a\n1\n")})
    assert response.status_code == 404


def test_invalid_options_json_returns_400(client):
    response = client.post(
        "/import/accounts",
        files={"file": _csv("accounts.csv", ACCOUNTS_CSV)},
        data={"options_json": "{not json"},
    )
    assert response.status_code == 400
    assert "options_json" in response.json()["detail"]


def test_validate_does_not_write(client, services):
    content = csv_bytes([{"name": "Acme Corp"}, {"name": ""}])
    response = client.post("/import/validate/accounts", files={"file": _csv("accounts.csv", content)})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["skipped"] == 1
    assert body["failed"] == 1
    assert body["errors"][0]["message"] == "Account name is required"
    with services.session_factory() as session:
        assert session.query(CompanyAccount).count() == 0


def test_batch_import(client):
    response = client.post(
        "/import/batch",
        files={
            "accounts": _csv("accounts.csv", ACCOUNTS_CSV),
            "products": _csv("products.csv", PRODUCTS_CSV),
        },
        data={"options_json": json.dumps({"continueOnError": True})},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["overall_status"] == "completed"
    assert body["summary"]["total_created"] == 3
    assert body["opportunities"] is None

    job = client.get(f"/import/jobs/{body['job_id']}").json()["job"]
    assert job["status"] == JobStatus.COMPLETED.value
    assert [stage["name"] for stage in job["stages"]] == ["accounts", "products"]


def test_batch_without_files_returns_400(client):
    response = client.post("/import/batch", data={"options_json": "{}"})
    assert response.status_code == 400
    assert response.json()["detail"] == "No import files provided"


def test_batch_with_bad_process_order_returns_400(client):
    response = client.post(
        "/import/batch/queue",
        files={"accounts": _csv("accounts.csv", ACCOUNTS_CSV)},
        data={"options_json": json.dumps({"processOrder": ["accounts", "invoices"]})},
    )
    assert response.status_code == 400


def test_queued_import_and_job_endpoints(client, services):
    response = client.post("/import/accounts/queue", files={"file": _csv("accounts.csv", ACCOUNTS_CSV)})
    assert response.status_code == 202
    job_id = response.json()["job_id"]

    services.queue.wait_for(job_id, timeout=10)
    job = client.get(f"/import/jobs/{job_id}").json()["job"]
    assert job["status"] == JobStatus.COMPLETED.value
    assert job["result"]["created"] == 2

    listing = client.get("/import/jobs", params={"type": "accounts", "status": "completed"}).json()
    assert listing["total_count"] == 1
    assert listing["jobs"][0]["id"] == job_id

    # Finished jobs cannot be cancelled or paused.
    assert client.post(f"/import/jobs/{job_id}/cancel").status_code == 409
    assert client.post(f"/import/jobs/{job_id}/pause").status_code == 409

    stats = client.get("/import/stats").json()
    assert stats["total"] == 1
    assert stats["by_status"] == {"COMPLETED": 1}


def test_queued_batch(client, services):
    response = client.post(
        "/import/batch/queue",
        files={"accounts": _csv("accounts.csv", ACCOUNTS_CSV)},
    )
    assert response.status_code == 202
    job = services.queue.wait_for(response.json()["job_id"], timeout=10)
    assert job["type"] == "batch"
    assert job["status"] == JobStatus.COMPLETED.value
    assert job["stages"][0]["status"] == JobStatus.COMPLETED.value


def test_unknown_job_returns_404(client):
    assert client.get("/import/jobs/does-not-exist").status_code == 404
    assert client.post("/import/jobs/does-not-exist/cancel").status_code == 404
    assert client.get("/import/jobs/does-not-exist/events").status_code == 404


def test_asset_upload(client):
    response = client.post(
        "/import/assets",
        files=[
            ("files", ("notes.txt", b"Quarterly business review notes", "text/plain")),
            ("files", ("photo.png", b"\x89PNG", "image/png")),
        ],
    )
    assert response.status_code == 200
    body = response.json()
    assert body["created"] == 1
    assert body["failed"] == 1


def test_event_stream_for_finished_job(client, services):
    response = client.post("/import/accounts/queue", files={"file": _csv("accounts.csv", ACCOUNTS_CSV)})
    job_id = response.json()["job_id"]
    services.queue.wait_for(job_id, timeout=10)

    stream = client.get(f"/import/jobs/{job_id}/events")
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    frames = [frame for frame in stream.text.split("\n\n") if frame]
    assert len(frames) == 1
    event_line, data_line = frames[0].split("\n")
    assert event_line == "event: job"
    payload = json.loads(data_line[len("data: "):])
    assert payload["id"] == job_id
    assert payload["status"] == JobStatus.COMPLETED.value
    assert payload["progress"] == 100


def test_module_runner_serves_the_app(monkeypatch):
    import importhub.__main__ as runner

    calls = []
    monkeypatch.setattr(runner, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    runner.main()

    assert calls == [(
        "importhub.main:app",
        {"host": runner.settings.api_host, "port": runner.settings.api_port, "reload": runner.settings.debug},
    )]
