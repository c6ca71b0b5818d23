from datetime import datetime

import pytest

from importhub.domain.imports.importers.accounts import ACCOUNT_ALIASES
from importhub.domain.imports.importers.products import PRODUCT_ALIASES, PRODUCT_FIELD_TYPES
from importhub.domain.imports.mapper import (
    FieldAliasMapper,
    coerce_boolean,
    coerce_number,
    coerce_string,
    normalize_header,
)


@pytest.mark.parametrize("header", ["Company Name", "company-name", "COMPANY_NAME", " companyname "])
def test_normalize_header_ignores_case_and_separators(header):
    assert normalize_header(header) == "companyname"


def test_alias_rules_map_headers_case_insensitively():
    mapper = FieldAliasMapper(ACCOUNT_ALIASES)
    mapped = mapper.map_row({"Company Name": "Acme Corp", "Account Domain": "acme.com"}, row=1)

    assert mapped.values == {"name": "Acme Corp", "domain": "acme.com"}
    assert mapped.metadata == {}
    assert mapped.issues == []


def test_unmapped_columns_go_to_metadata_bag():
    mapper = FieldAliasMapper(ACCOUNT_ALIASES)
    mapped = mapper.map_row({"name": "Acme", "Favourite Colour": "blue", "Empty": "  "}, row=3)

    assert mapped.values["name"] == "Acme"
    assert mapped.metadata == {"Favourite Colour": "blue"}


def test_first_non_blank_alias_wins():
    mapper = FieldAliasMapper(ACCOUNT_ALIASES)
    mapped = mapper.map_row({"company": None, "account_name": "Globex"}, row=1)

    assert mapped.get("name") == "Globex"


def test_typed_fields_are_coerced():
    mapper = FieldAliasMapper(PRODUCT_ALIASES, PRODUCT_FIELD_TYPES)
    mapped = mapper.map_row(
        {"SKU": "1001.0", "Cost": "$1,200.50", "Start Date": "2024-01-15", "Active": "yes"},
        row=1,
    )

    assert mapped.values["item_number"] == "1001.0"
    assert mapped.values["current_cost"] == pytest.approx(1200.5)
    assert isinstance(mapped.values["scd_start_date"], datetime)
    assert mapped.values["scd_start_date"].tzinfo is not None
    assert mapped.values["is_current_record_flag"] is True


def test_coercion_failure_becomes_issue_and_value_is_dropped():
    mapper = FieldAliasMapper(PRODUCT_ALIASES, PRODUCT_FIELD_TYPES)
    mapped = mapper.map_row({"item_number": "A-1", "cost": "expensive"}, row=7)

    assert mapped.values["current_cost"] is None
    assert len(mapped.issues) == 1
    issue = mapped.issues[0]
    assert issue["field"] == "current_cost"
    assert issue["row"] == 7
    assert "value ignored" in issue["message"]


@pytest.mark.parametrize("raw, expected", [
    ("(300)", -300.0),
    ("12%", 12.0),
    ("1,000", 1000.0),
    ("", None),
    (None, None),
    (5, 5.0),
])
def test_coerce_number(raw, expected):
    assert coerce_number(raw) == expected


def test_coerce_number_rejects_text():
    with pytest.raises(ValueError):
        coerce_number("n/a")


def test_coerce_boolean_rejects_unknown_text():
    assert coerce_boolean("Inactive") is False
    with pytest.raises(ValueError):
        coerce_boolean("maybe")


def test_coerce_string_drops_float_suffix_for_integral_values():
    assert coerce_string(1001.0) == "1001"
    assert coerce_string("  padded ") == "padded"
