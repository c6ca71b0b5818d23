"""
Date parsing utilities for flexible date format handling.

Import files carry dates as ISO strings, US or European numeric dates, or
spreadsheet timestamps. These helpers normalize all of them to timezone-aware
UTC datetimes.
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

import pandas as pd

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5

_failure_count = 0


def _record_parse_failure(value: Any, error: Exception) -> None:
    """Emit a limited number of warnings so a bad column does not flood the log."""
    global _failure_count
    _failure_count += 1
    if _failure_count <= FAILED_SAMPLE_LIMIT:
        logger.warning("Failed to parse date value '%s': %s", value, error)
    elif _failure_count == FAILED_SAMPLE_LIMIT + 1:
        logger.info("Suppressing further date parse warnings")


def parse_flexible_date(value: Any, *, dayfirst_default: bool = False) -> Optional[datetime]:
    """
    Parse a date value from various formats and return a UTC datetime.

    Supports formats:
    - ISO 8601: "2024-09-04T23:09:18Z"
    - DD/MM/YYYY: "20/10/2025"
    - MM/DD/YYYY: "10/20/2025"
    - YYYY-MM-DD: "2025-10-20"
    - And many others via pandas inference

    Returns:
        Timezone-aware datetime, or None when the value is empty or unparseable.
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None

    parse_attempts = []
    if isinstance(value, str):
        numeric_match = re.match(r'^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}', value)
        if numeric_match:
            parts = re.split(r'[/-]', numeric_match.group(0))
            first, second = int(parts[0]), int(parts[1])

            # Decide whether day-first is more plausible
            if first > 12 and second <= 31:
                dayfirst_preferred = True
            elif second > 12 and first <= 12:
                dayfirst_preferred = False
            else:
                dayfirst_preferred = dayfirst_default

            parse_attempts.append(lambda v, df=dayfirst_preferred: pd.to_datetime(v, utc=True, dayfirst=df))
            parse_attempts.append(lambda v, df=not dayfirst_preferred: pd.to_datetime(v, utc=True, dayfirst=df))

    # Fallback: let pandas infer the format
    parse_attempts.append(lambda v: pd.to_datetime(v, utc=True))

    last_error: Optional[Exception] = None
    for attempt in parse_attempts:
        try:
            parsed = attempt(value)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            return None
        return parsed.to_pydatetime()

    _record_parse_failure(value, last_error or ValueError("unrecognized format"))
    return None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
