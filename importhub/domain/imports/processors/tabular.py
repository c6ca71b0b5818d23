import io
import logging
from typing import Any, Dict, List

import pandas as pd

from importhub.domain.imports.errors import DependencyUnavailable

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")


def _records_from_frame(df: pd.DataFrame) -> List[Dict[str, Any]]:
    # Drop rows where every cell is empty; spreadsheets often trail blank lines.
    df = df.dropna(how="all")
    records = df.to_dict("records")

    # Convert pandas NaN/NaT values to None for database compatibility
    for record in records:
        for key, value in record.items():
            if not isinstance(value, (list, dict)) and pd.isna(value):
                record[key] = None
    return records


def process_csv(file_content: bytes) -> List[Dict[str, Any]]:
    """Process CSV file and return list of dictionaries; every cell is read as text."""
    df = pd.read_csv(io.BytesIO(file_content), dtype=str, skipinitialspace=True)
    return _records_from_frame(df)


def process_excel(file_content: bytes) -> List[Dict[str, Any]]:
    """Process Excel file (first sheet) and return list of dictionaries."""
    try:
        df = pd.read_excel(io.BytesIO(file_content), engine="openpyxl")
    except Exception:
        # Fallback to default pandas engine
        try:
            df = pd.read_excel(io.BytesIO(file_content))
        except Exception as e:
            raise ValueError(f"Could not read Excel file: {str(e)}")
    return _records_from_frame(df)


class TabularParser:
    """Turns an uploaded CSV or Excel file into a list of row dictionaries."""

    name = "tabular-parser"

    def parse(self, file_content: bytes, file_name: str) -> List[Dict[str, Any]]:
        lowered = (file_name or "").lower()
        try:
            if lowered.endswith(EXCEL_EXTENSIONS):
                records = process_excel(file_content)
            else:
                records = process_csv(file_content)
        except pd.errors.EmptyDataError:
            logger.info("File %s has no rows", file_name)
            return []
        except Exception as exc:
            logger.error("Failed to parse %s: %s", file_name, exc)
            raise DependencyUnavailable(self.name, f"Failed to parse {file_name}: {exc}") from exc

        logger.info("Parsed %d rows from %s", len(records), file_name)
        return records
