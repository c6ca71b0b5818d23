"""
Header alias normalization and value coercion for tabular import rows.

Each entity declares an ordered list of ``(candidate header, canonical field)``
rules. Headers are compared case-insensitively with whitespace, dashes and
underscores ignored, so ``Company Name``, ``company-name`` and ``COMPANY_NAME``
all hit the same rule. The first rule that matches wins. Columns no rule
claims are kept in a metadata bag instead of being dropped.
"""
import logging
import numbers
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from importhub.utils.date import parse_flexible_date

logger = logging.getLogger(__name__)

_HEADER_NOISE = re.compile(r"[\s\-_]+")

TRUE_VALUES = {"true", "t", "yes", "y", "1", "active", "current"}
FALSE_VALUES = {"false", "f", "no", "n", "0", "inactive"}


def normalize_header(header: Any) -> str:
    """Lowercase and strip whitespace, dashes and underscores."""
    return _HEADER_NOISE.sub("", str(header).strip().lower())


def _build_mapping_error(
    *,
    message: str,
    column: Optional[str] = None,
    expected_type: Optional[str] = None,
    value: Optional[Any] = None,
    row: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a structured coercion issue for the importer to record as a warning."""
    payload: Dict[str, Any] = {"message": message}
    if column is not None:
        payload["field"] = column
    if expected_type is not None:
        payload["expected_type"] = expected_type
    if row is not None:
        payload["row"] = row
    if value is not None:
        payload["value"] = value if isinstance(value, (int, float, str, bool)) else str(value)
    return payload


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, float) and pd.isna(value):
        return True
    return False


def coerce_number(value: Any) -> Optional[float]:
    """
    Parse numbers the way spreadsheets export them: ``$1,200.50``, ``(300)``
    for negatives, ``12%``. Raises ``ValueError`` for non-numeric text.
    """
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, numbers.Real):
        return None if pd.isna(value) else float(value)

    text = str(value).strip().replace(",", "")
    if text.endswith("%"):
        text = text[:-1]
    if text.startswith("$"):
        text = text[1:]
    if text.startswith("(") and text.endswith(")"):
        text = f"-{text[1:-1]}"
    try:
        return float(Decimal(text))
    except InvalidOperation:
        raise ValueError(f"Non-numeric value '{value}'")


def coerce_integer(value: Any) -> Optional[int]:
    number = coerce_number(value)
    if number is None:
        return None
    if not float(number).is_integer():
        raise ValueError(f"Value '{value}' is not an integer")
    return int(number)


def coerce_boolean(value: Any) -> Optional[bool]:
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, numbers.Real):
        return bool(value)
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"Unrecognized boolean value '{value}'")


def coerce_string(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        # pandas reads numeric identifiers such as 1001 as 1001.0
        return str(int(value))
    return str(value).strip()


@dataclass
class MappedRow:
    """One source row after alias mapping and coercion."""
    row: int
    values: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    issues: List[Dict[str, Any]] = field(default_factory=list)

    def get(self, name: str, default: Any = None) -> Any:
        value = self.values.get(name)
        return default if value is None else value


class FieldAliasMapper:
    """
    Map raw rows onto canonical fields.

    Args:
        rules: Ordered ``(candidate header, canonical field)`` pairs.
        field_types: Canonical field -> one of ``string``, ``integer``,
            ``float``, ``boolean``, ``date``. Unlisted fields stay strings.
        dayfirst_default: Tie-breaker for ambiguous numeric dates.
    """

    def __init__(
        self,
        rules: Sequence[Tuple[str, str]],
        field_types: Optional[Dict[str, str]] = None,
        *,
        dayfirst_default: bool = False,
    ):
        self.rules = list(rules)
        self.field_types = dict(field_types or {})
        self.dayfirst_default = dayfirst_default
        self._lookup: Dict[str, str] = {}
        for candidate, canonical in self.rules:
            # First rule for a normalized header wins.
            self._lookup.setdefault(normalize_header(candidate), canonical)
        for canonical in {canonical for _, canonical in self.rules}:
            self._lookup.setdefault(normalize_header(canonical), canonical)

    @property
    def canonical_fields(self) -> List[str]:
        seen: List[str] = []
        for _, canonical in self.rules:
            if canonical not in seen:
                seen.append(canonical)
        return seen

    def resolve(self, header: Any) -> Optional[str]:
        return self._lookup.get(normalize_header(header))

    def map_row(self, raw: Dict[str, Any], row: int) -> MappedRow:
        mapped = MappedRow(row=row)
        for header, value in raw.items():
            canonical = self.resolve(header)
            if canonical is None:
                if not is_blank(value):
                    mapped.metadata[str(header)] = _plain_value(value)
                continue
            # Two headers may alias the same field; keep the first non-blank one.
            if mapped.values.get(canonical) is not None:
                continue
            mapped.values[canonical] = self._coerce(canonical, value, row, mapped.issues)
        return mapped

    def map_rows(self, rows: Iterable[Dict[str, Any]], *, start_row: int = 1) -> List[MappedRow]:
        return [self.map_row(raw, start_row + index) for index, raw in enumerate(rows)]

    def _coerce(self, canonical: str, value: Any, row: int, issues: List[Dict[str, Any]]) -> Any:
        expected = self.field_types.get(canonical, "string")
        try:
            if expected == "integer":
                return coerce_integer(value)
            if expected == "float":
                return coerce_number(value)
            if expected == "boolean":
                return coerce_boolean(value)
            if expected == "date":
                if is_blank(value):
                    return None
                parsed = parse_flexible_date(value, dayfirst_default=self.dayfirst_default)
                if parsed is None:
                    raise ValueError(f"Unparseable date '{value}'")
                return parsed
            return coerce_string(value)
        except ValueError as exc:
            message = f"{exc} for field '{canonical}'; value ignored"
            logger.debug("Row %s: %s", row, message)
            issues.append(_build_mapping_error(
                message=message,
                column=canonical,
                expected_type=expected,
                value=value,
                row=row,
            ))
            return None


def _plain_value(value: Any) -> Any:
    """Metadata is stored as JSON; unwrap numpy scalars and timestamps."""
    if isinstance(value, bool):
        return value
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        return float(value)
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return str(value)
