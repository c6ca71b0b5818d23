import pytest

from importhub.db.models import Document, DocumentStatus, VectorChunk
from importhub.domain.imports.importers.assets import AssetImporter, AssetUpload, detect_category
from importhub.domain.imports.processors.documents import DOCX_MIME

CASE_STUDY = (
    "Acme Networks Case Study\n\n"
    + "Acme replaced its legacy switching fabric across twelve sites. " * 12
)


@pytest.fixture
def importer(session_factory, settings, fake_embeddings):
    return AssetImporter(session_factory, settings, embeddings=fake_embeddings)


def _text_upload(name="story.txt", text=CASE_STUDY):
    return AssetUpload(file_name=name, content=text.encode("utf-8"), mime_type="text/plain")


def test_text_upload_is_processed(importer, session_factory):
    result = importer.import_assets([_text_upload()], {"generate_chunks": True, "detect_category": True})

    assert result.created == 1
    assert result.failed == 0
    assert result.stats["chunks_generated"] > 1
    with session_factory() as session:
        document = session.get(Document, result.created_ids[0])
        assert document.status == DocumentStatus.PROCESSED.value
        assert document.title == "Acme Networks Case Study"
        assert document.category == "Case Study"
        assert document.scope == "CASE_STUDIES"
        assert document.file_type == "txt"
        assert document.processed_at is not None
        assert document.total_chunks == result.stats["chunks_generated"]
        chunks = session.query(VectorChunk).filter(VectorChunk.owner_id == document.id).all()
        assert len(chunks) == document.total_chunks
        assert all(chunk.embedding is None for chunk in chunks)


def test_store_vectors_embeds_every_chunk(importer, session_factory):
    result = importer.import_assets([_text_upload()], {"store_vectors": True})

    assert result.created == 1
    assert result.stats["vectors_stored"] == result.stats["chunks_generated"]
    with session_factory() as session:
        chunks = session.query(VectorChunk).filter(VectorChunk.owner_type == "document").all()
        assert chunks
        assert all(len(chunk.embedding) == 8 for chunk in chunks)
        assert all(chunk.extra_metadata["file_name"] == "story.txt" for chunk in chunks)


def test_store_vectors_without_provider_warns(session_factory, settings):
    importer = AssetImporter(session_factory, settings)
    result = importer.import_assets([_text_upload()], {"store_vectors": True})

    assert result.created == 1
    assert "vectors_stored" not in result.stats
    assert [issue.message for issue in result.warnings] == [
        "Embedding provider not configured; document vectors not stored"
    ]


def test_invalid_uploads_fail_individually(importer, session_factory):
    uploads = [
        _text_upload("good.txt"),
        AssetUpload(file_name="picture.png", content=b"\x89PNG", mime_type="image/png"),
        AssetUpload(file_name="empty.txt", content=b"", mime_type="text/plain"),
        AssetUpload(file_name="big.txt", content=b"x" * 2048, mime_type="text/plain"),
    ]
    result = importer.import_assets(uploads, {"max_file_size": 1024})

    assert result.total == 4
    assert result.created == 1
    assert result.failed == 3
    messages = {issue.file: issue.message for issue in result.errors}
    assert messages["picture.png"] == "Unsupported file type: image/png"
    assert messages["empty.txt"] == "File is empty"
    assert messages["big.txt"] == "File size exceeds maximum allowed (0 MB)"
    with session_factory() as session:
        assert session.query(Document).count() == 1


def test_parser_failure_marks_document_failed(importer, session_factory):
    upload = AssetUpload(file_name="deck.docx", content=b"PK\x03\x04", mime_type=DOCX_MIME)
    result = importer.import_assets([upload])

    assert result.failed == 1
    assert result.errors[0].message.startswith("Failed to process deck.docx")
    with session_factory() as session:
        document = session.query(Document).one()
        assert document.status == DocumentStatus.FAILED.value
        assert document.error_message
    assert result.created_ids == []
    assert result.related_created_ids["documents"] == [document.id]


def test_detect_category():
    assert detect_category("Quarterly DATA SHEET for routers") == ("Data Sheet", "DATA_SHEETS")
    assert detect_category("Installation manual") == ("Technical Documentation", "TECHNICAL_DOCS")
    assert detect_category("Meeting notes") is None


def test_progress_reports_each_batch(importer):
    events = []
    uploads = [_text_upload(f"doc-{i}.txt") for i in range(7)]
    importer.import_assets(uploads, {"batch_size": 3}, on_progress=events.append)

    importing = [event for event in events if event.stage == "importing"]
    assert [event.processed for event in importing] == [3, 6, 7]
    assert events[-1].stage == "completed"
