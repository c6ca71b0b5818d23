import pytest

from importhub.db.models import Product
from importhub.domain.imports.errors import EntityImportFailed
from importhub.domain.imports.importers.products import ProductImporter


@pytest.fixture
def importer(session_factory, settings):
    return ProductImporter(session_factory, settings)


def _rows_for(session_factory, item_number):
    with session_factory() as session:
        return (
            session.query(Product)
            .filter(Product.item_number == item_number)
            .order_by(Product.created_at)
            .all()
        )


def test_significant_change_creates_new_version(importer, session_factory):
    importer.import_rows([{"Item Number": "SKU-1", "Description": "Router", "Cost": "100"}])
    result = importer.import_rows(
        [{"Item Number": "SKU-1", "Cost": "125.50"}],
        {"update_existing": True},
    )

    assert result.updated == 1
    assert result.stats["versions_created"] == 1
    assert len(result.superseded_ids) == 1

    rows = _rows_for(session_factory, "SKU-1")
    assert len(rows) == 2
    closed = [row for row in rows if not row.is_current_record_flag]
    current = [row for row in rows if row.is_current_record_flag]
    assert len(closed) == 1 and len(current) == 1
    assert closed[0].scd_end_date is not None
    assert closed[0].current_cost == 100
    assert current[0].scd_end_date is None
    assert current[0].current_cost == pytest.approx(125.5)
    # Unchanged values carry over to the new version.
    assert current[0].item_description == "Router"
    assert result.updated_ids == [current[0].id]


def test_non_significant_change_updates_in_place(importer, session_factory):
    importer.import_rows([{"item_number": "SKU-2", "cost": "10", "portfolio": "Core"}])
    result = importer.import_rows(
        [{"item_number": "SKU-2", "cost": "10", "portfolio": "Edge"}],
        {"update_existing": True},
    )

    assert result.updated == 1
    assert "versions_created" not in result.stats
    rows = _rows_for(session_factory, "SKU-2")
    assert len(rows) == 1
    assert rows[0].portfolio == "Edge"


def test_scd_can_be_disabled(importer, session_factory):
    importer.import_rows([{"item_number": "SKU-3", "cost": "10"}])
    importer.import_rows([{"item_number": "SKU-3", "cost": "20"}], {"update_existing": True, "enable_scd": False})

    rows = _rows_for(session_factory, "SKU-3")
    assert len(rows) == 1
    assert rows[0].current_cost == 20


def test_product_validation(importer):
    result = importer.import_rows([
        {"item_number": ""},
        {"item_number": "X" * 101},
        {"item_number": "SKU-4", "start_date": "2024-05-01", "end_date": "2024-01-01"},
        {"item_number": "SKU-5", "cost": "-5"},
    ])

    assert result.failed == 3
    assert [issue.message for issue in result.errors] == [
        "Item number is required",
        "Item number exceeds maximum length (100 characters)",
        "SCD start date cannot be after end date",
    ]
    assert result.created == 1
    assert any(issue.message == "Current cost is negative" and issue.row == 4 for issue in result.warnings)


def test_same_item_twice_in_one_file_is_serialized(importer, session_factory):
    result = importer.import_rows(
        [{"item_number": "SKU-6", "cost": "1"}, {"item_number": "SKU-6", "cost": "1"}],
        {"skip_duplicates": True},
    )

    assert result.created == 1
    assert result.skipped == 1
    assert len(_rows_for(session_factory, "SKU-6")) == 1


def test_unexpected_error_carries_partial_result(importer, monkeypatch):
    original = importer.create_record

    def create_record(session, record, options, outcome):
        if record.values.get("item_number") == "SKU-B":
            raise RuntimeError("store outage")
        return original(session, record, options, outcome)

    monkeypatch.setattr(importer, "create_record", create_record)

    with pytest.raises(EntityImportFailed) as excinfo:
        importer.import_rows(
            [{"item_number": "SKU-A", "cost": "10"}, {"item_number": "SKU-B", "cost": "20"}],
            {"batch_size": 1},
        )

    partial = excinfo.value.result
    assert excinfo.value.message == "store outage"
    assert partial.created == 1
    assert len(partial.created_ids) == 1
    assert partial.errors[-1].message == "store outage"
