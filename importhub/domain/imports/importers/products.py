"""
Product importer with slowly-changing-dimension versioning.

Several rows may share an item number; exactly one of them is current. An
update that changes a significant field closes the current row and inserts a
new current one instead of overwriting history.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from importhub.db.models import Product
from importhub.domain.imports.importers.base import EntityImporter, PreparedRecord
from importhub.domain.imports.options import ProductImportOptions
from importhub.utils.date import as_utc

logger = logging.getLogger(__name__)

PRODUCT_ALIASES = [
    ("item_number", "item_number"),
    ("product_number", "item_number"),
    ("sku", "item_number"),
    ("item_description", "item_description"),
    ("product_description", "item_description"),
    ("description", "item_description"),
    ("item_type_code", "item_type_code"),
    ("type_code", "item_type_code"),
    ("item_type_description", "item_type_description"),
    ("type_description", "item_type_description"),
    ("product_type", "product_type"),
    ("item_revenue_category", "item_revenue_category"),
    ("revenue_category", "item_revenue_category"),
    ("item_manufacturer", "item_manufacturer"),
    ("manufacturer", "item_manufacturer"),
    ("item_category", "item_category"),
    ("category", "item_category"),
    ("item_line_of_business", "item_line_of_business"),
    ("line_of_business", "item_line_of_business"),
    ("lob", "item_line_of_business"),
    ("item_subcategory", "item_subcategory"),
    ("subcategory", "item_subcategory"),
    ("item_class", "item_class"),
    ("class", "item_class"),
    ("portfolio", "portfolio"),
    ("current_cost", "current_cost"),
    ("cost", "current_cost"),
    ("price", "current_cost"),
    ("scd_start_date", "scd_start_date"),
    ("start_date", "scd_start_date"),
    ("scd_end_date", "scd_end_date"),
    ("end_date", "scd_end_date"),
    ("is_current_record_flag", "is_current_record_flag"),
    ("is_current", "is_current_record_flag"),
    ("active", "is_current_record_flag"),
    ("solution_segment", "solution_segment"),
    ("business_segment", "business_segment"),
    ("growth_category", "growth_category"),
]

PRODUCT_FIELD_TYPES = {
    "item_type_code": "integer",
    "current_cost": "float",
    "scd_start_date": "date",
    "scd_end_date": "date",
    "is_current_record_flag": "boolean",
}

PRODUCT_COLUMNS = (
    "item_number", "item_description", "item_type_code", "item_type_description", "product_type",
    "item_revenue_category", "item_manufacturer", "item_category", "item_line_of_business",
    "item_subcategory", "item_class", "portfolio", "current_cost", "solution_segment",
    "business_segment", "growth_category",
)

# A change in any of these creates a new product version.
SIGNIFICANT_FIELDS = (
    "item_description",
    "item_category",
    "item_manufacturer",
    "solution_segment",
    "business_segment",
    "current_cost",
)


def _changed(current: Any, incoming: Any) -> bool:
    if incoming is None:
        return False
    if isinstance(incoming, float) or isinstance(current, float):
        if current is None:
            return True
        return abs(float(current) - float(incoming)) > 1e-9
    return current != incoming


class ProductImporter(EntityImporter):
    entity = "products"
    label = "Product"
    options_model = ProductImportOptions
    rules = PRODUCT_ALIASES
    field_types = PRODUCT_FIELD_TYPES
    batch_size_setting = "product_batch_size"

    def describe(self, values: Dict[str, Any], row: int) -> str:
        return values.get("item_number") or f"Row {row}"

    def validate(self, values: Dict[str, Any], options: ProductImportOptions) -> Tuple[List[str], List[str]]:
        errors: List[str] = []
        warnings: List[str] = []
        item_number = values.get("item_number")
        if not item_number:
            errors.append("Item number is required")
        elif len(item_number) > 100:
            errors.append("Item number exceeds maximum length (100 characters)")

        start, end = values.get("scd_start_date"), values.get("scd_end_date")
        if start and end and start > end:
            errors.append("SCD start date cannot be after end date")

        cost = values.get("current_cost")
        if cost is not None and cost < 0:
            warnings.append("Current cost is negative")

        description = values.get("item_description")
        if description and len(description) > 2000:
            warnings.append("Item description is very long and may be truncated")
        return errors, warnings

    def lock_keys(self, record: PreparedRecord) -> List[str]:
        return [f"products:item:{record.values['item_number'].lower()}"]

    def find_existing(self, session: Session, record: PreparedRecord) -> Optional[Product]:
        return find_current_product(session, record.values["item_number"])

    def create_record(self, session, record, options, outcome) -> Product:
        product = self._build(record)
        session.add(product)
        return product

    def update_record(self, session, existing: Product, record, options: ProductImportOptions, outcome) -> Product:
        significant = [
            name for name in SIGNIFICANT_FIELDS
            if _changed(getattr(existing, name), record.values.get(name))
        ]
        if options.enable_scd and significant:
            now = datetime.now(timezone.utc)
            existing.is_current_record_flag = False
            existing.scd_end_date = now
            # Close the old row before the new current row exists.
            session.flush()

            version = self._build(record, base=existing)
            version.scd_start_date = now
            version.scd_end_date = None
            version.is_current_record_flag = True
            session.add(version)
            outcome.superseded_ids.append(existing.id)
            outcome.bump("versions_created")
            logger.debug("Item %s versioned; changed fields: %s", existing.item_number, significant)
            return version

        for column in PRODUCT_COLUMNS:
            value = record.values.get(column)
            if value is not None:
                setattr(existing, column, value)
        if record.metadata:
            merged = dict(existing.extra_metadata or {})
            merged.update(record.metadata)
            existing.extra_metadata = merged
        return existing

    def _build(self, record: PreparedRecord, base: Optional[Product] = None) -> Product:
        values = {}
        for column in PRODUCT_COLUMNS:
            incoming = record.values.get(column)
            if incoming is None and base is not None:
                incoming = getattr(base, column)
            values[column] = incoming
        metadata = dict(base.extra_metadata or {}) if base is not None else {}
        metadata.update(record.metadata)
        product = Product(**values, extra_metadata=metadata)
        if record.values.get("scd_start_date"):
            product.scd_start_date = as_utc(record.values["scd_start_date"])
        if record.values.get("scd_end_date"):
            product.scd_end_date = as_utc(record.values["scd_end_date"])
        flag = record.values.get("is_current_record_flag")
        product.is_current_record_flag = True if flag is None else flag
        return product


def find_current_product(session: Session, item_number: str) -> Optional[Product]:
    return (
        session.query(Product)
        .filter(Product.item_number == item_number, Product.is_current_record_flag.is_(True))
        .order_by(Product.scd_start_date.desc())
        .first()
    )
