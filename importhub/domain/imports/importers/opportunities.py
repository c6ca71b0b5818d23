import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from importhub.db.models import CompanyAccount, Opportunity, PurchaseProduct
from importhub.domain.imports.errors import RowValidationError
from importhub.domain.imports.importers.accounts import (
    account_lock_keys,
    find_account,
    generate_account_number,
)
from importhub.domain.imports.importers.base import EntityImporter, PreparedRecord, RecordOutcome
from importhub.domain.imports.importers.products import find_current_product
from importhub.domain.imports.options import OpportunityImportOptions
from importhub.utils.date import as_utc

logger = logging.getLogger(__name__)

OPPORTUNITY_ALIASES = [
    ("opportunity_number", "opportunity_number"),
    ("opp_number", "opportunity_number"),
    ("opportunity_id", "opportunity_number"),
    ("customer_name", "customer_name"),
    ("customer", "customer_name"),
    ("account_name", "account_name"),
    ("opp_stage", "opp_stage"),
    ("stage", "opp_stage"),
    ("opportunity_stage", "opp_stage"),
    ("sales_person", "sales_person"),
    ("sales_rep", "sales_person"),
    ("salesperson", "sales_person"),
    ("sales_director", "sales_director"),
    ("director", "sales_director"),
    ("booked_gross_revenue", "booked_gross_revenue"),
    ("booked_revenue", "booked_gross_revenue"),
    ("revenue", "booked_gross_revenue"),
    ("pipeline_gross_revenue", "pipeline_gross_revenue"),
    ("pipeline_revenue", "pipeline_gross_revenue"),
    ("pipeline", "pipeline_gross_revenue"),
    ("margin", "margin"),
    ("profit_margin", "margin"),
    ("booked_date", "booked_date"),
    ("close_date", "booked_date"),
    ("estimated_close_date", "estimated_close_date"),
    ("est_close_date", "estimated_close_date"),
    ("projected_close", "estimated_close_date"),
    ("account_id", "account_id"),
    ("account_number", "account_number"),
    # Product line columns used for purchase links
    ("item_number", "item_number"),
    ("product_number", "item_number"),
    ("sku", "item_number"),
    ("gp_revenue_category", "gp_revenue_category"),
    ("revenue_category", "gp_revenue_category"),
    ("mapped_solution_area", "mapped_solution_area"),
    ("solution_area", "mapped_solution_area"),
    ("mapped_segment", "mapped_segment"),
    ("segment", "mapped_segment"),
    ("mapped_capability", "mapped_capability"),
    ("capability", "mapped_capability"),
    ("item_category", "item_category"),
    ("product_category", "item_category"),
    ("quantity", "quantity"),
    ("unit_price", "unit_price"),
    ("price", "unit_price"),
    ("total_value", "total_value"),
    ("value", "total_value"),
]

OPPORTUNITY_FIELD_TYPES = {
    "booked_gross_revenue": "float",
    "pipeline_gross_revenue": "float",
    "margin": "float",
    "booked_date": "date",
    "estimated_close_date": "date",
    "quantity": "float",
    "unit_price": "float",
    "total_value": "float",
}

OPPORTUNITY_COLUMNS = (
    "opportunity_number", "customer_name", "opp_stage", "sales_person", "sales_director",
    "booked_gross_revenue", "pipeline_gross_revenue", "margin",
)

LINK_COLUMNS = (
    "gp_revenue_category", "mapped_solution_area", "mapped_segment", "mapped_capability",
    "item_category", "quantity", "unit_price", "total_value",
)


class OpportunityImporter(EntityImporter):
    entity = "opportunities"
    label = "Opportunity"
    options_model = OpportunityImportOptions
    rules = OPPORTUNITY_ALIASES
    field_types = OPPORTUNITY_FIELD_TYPES
    batch_size_setting = "opportunity_batch_size"

    def describe(self, values: Dict[str, Any], row: int) -> str:
        return values.get("opportunity_number") or f"Row {row}"

    def validate(self, values: Dict[str, Any], options: OpportunityImportOptions) -> Tuple[List[str], List[str]]:
        errors: List[str] = []
        warnings: List[str] = []
        if not values.get("opportunity_number"):
            errors.append("Opportunity number is required")
        if not values.get("customer_name"):
            if values.get("account_name"):
                values["customer_name"] = values["account_name"]
            else:
                errors.append("Customer name is required")

        booked = values.get("booked_gross_revenue")
        if booked is not None and booked < 0:
            warnings.append("Negative booked revenue detected")
        pipeline = values.get("pipeline_gross_revenue")
        if pipeline is not None and pipeline < 0:
            warnings.append("Negative pipeline revenue detected")
        margin = values.get("margin")
        if margin is not None and (margin < -100 or margin > 100):
            warnings.append("Margin value seems unusual (should be percentage)")

        booked_date = values.get("booked_date")
        close_date = values.get("estimated_close_date")
        if booked_date and close_date and booked_date > close_date:
            warnings.append("Booked date is after estimated close date")
        if close_date and close_date < datetime.now(timezone.utc):
            warnings.append("Estimated close date is in the past")
        return errors, warnings

    def lock_keys(self, record: PreparedRecord) -> List[str]:
        keys = [f"opportunities:number:{record.values['opportunity_number'].lower()}"]
        keys.extend(account_lock_keys({
            "account_number": record.values.get("account_number"),
            "name": self._account_name(record),
        }))
        return keys

    def find_existing(self, session: Session, record: PreparedRecord) -> Optional[Opportunity]:
        return (
            session.query(Opportunity)
            .filter(Opportunity.opportunity_number == record.values["opportunity_number"])
            .first()
        )

    def create_record(self, session, record, options: OpportunityImportOptions, outcome: RecordOutcome) -> Opportunity:
        account = self._resolve_account(session, record, options, outcome)
        opportunity = Opportunity(account_id=account.id, extra_metadata=dict(record.metadata))
        self._assign(opportunity, record)
        session.add(opportunity)
        session.flush()
        if options.link_products:
            self._link_product(session, opportunity, record, outcome)
        return opportunity

    def update_record(self, session, existing: Opportunity, record, options, outcome) -> Opportunity:
        if record.values.get("account_id") or record.values.get("account_number") or record.values.get("account_name"):
            account = self._resolve_account(session, record, options, outcome)
            existing.account_id = account.id
        self._assign(existing, record, keep_existing=True)
        if record.metadata:
            merged = dict(existing.extra_metadata or {})
            merged.update(record.metadata)
            existing.extra_metadata = merged
        if options.link_products:
            self._link_product(session, existing, record, outcome)
        return existing

    def _assign(self, opportunity: Opportunity, record: PreparedRecord, keep_existing: bool = False) -> None:
        for column in OPPORTUNITY_COLUMNS:
            value = record.values.get(column)
            if value is None and keep_existing:
                continue
            if value is None and column in ("booked_gross_revenue", "pipeline_gross_revenue", "margin"):
                value = 0
            setattr(opportunity, column, value)
        for column in ("booked_date", "estimated_close_date"):
            value = record.values.get(column)
            if value is not None or not keep_existing:
                setattr(opportunity, column, as_utc(value))

    def _account_name(self, record: PreparedRecord) -> Optional[str]:
        return record.values.get("account_name") or record.values.get("customer_name")

    def _resolve_account(
        self, session: Session, record: PreparedRecord, options: OpportunityImportOptions, outcome: RecordOutcome
    ) -> CompanyAccount:
        name = self._account_name(record)
        account = find_account(
            session,
            account_id=record.values.get("account_id"),
            account_number=record.values.get("account_number"),
            name=name,
        )
        if account is not None:
            return account
        if not options.create_missing_accounts:
            raise RowValidationError("Account not found for opportunity", row=record.row)

        account = CompanyAccount(
            name=name,
            account_number=record.values.get("account_number") or generate_account_number(),
            extra_metadata={"created_by": "opportunity_import"},
        )
        session.add(account)
        session.flush()
        outcome.related_created.setdefault("accounts", []).append(account.id)
        outcome.bump("accounts_created")
        logger.debug("Created account %s for opportunity %s", name, record.label)
        return account

    def _link_product(
        self, session: Session, opportunity: Opportunity, record: PreparedRecord, outcome: RecordOutcome
    ) -> None:
        item_number = record.values.get("item_number")
        if not item_number:
            return
        product = find_current_product(session, item_number)
        if product is None:
            outcome.warn(f"Product {item_number} not found; link skipped", "item_number")
            return

        existing = (
            session.query(PurchaseProduct)
            .filter(
                PurchaseProduct.opportunity_id == opportunity.id,
                PurchaseProduct.product_id == product.id,
            )
            .first()
        )
        if existing is not None:
            return

        link = PurchaseProduct(
            opportunity_id=opportunity.id,
            product_id=product.id,
            **{column: record.values.get(column) for column in LINK_COLUMNS},
        )
        savepoint = session.begin_nested()
        try:
            session.add(link)
            session.flush()
            savepoint.commit()
        except IntegrityError:
            # Link already recorded by a concurrent import.
            savepoint.rollback()
            return
        except Exception as exc:
            savepoint.rollback()
            outcome.warn(f"Failed to link product {item_number}: {exc}", "item_number")
            return
        outcome.bump("products_linked")
