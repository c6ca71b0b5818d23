from typing import Any
from decimal import Decimal
from datetime import datetime, date
from enum import Enum

from pydantic import BaseModel


def _make_json_safe(value: Any) -> Any:
    """
    Convert Python objects into JSON-serialisable structures, preserving
    as much fidelity as possible. Used before writing job results to JSON columns.
    """
    if isinstance(value, BaseModel):
        return _make_json_safe(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_make_json_safe(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    # Fallback to string representation for unsupported types
    return str(value)
