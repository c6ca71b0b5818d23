"""
Compensating rollback for batch imports.

There is no transaction spanning entities, so a failed batch is undone by
deleting what this run created, in reverse dependency order:

1. opportunities (and their purchase links)
2. products (new rows and SCD versions; superseded versions are reopened)
3. accounts (including accounts created by the opportunity importer)
4. assets (documents, including FAILED ones, and their chunks)

Each step runs in its own transaction. A failing step is reported and the
remaining steps still run.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set

from sqlalchemy.orm import Session, sessionmaker

from importhub.db.models import (
    AccountInsight,
    CompanyAccount,
    Document,
    Opportunity,
    Product,
    PurchaseProduct,
    VectorChunk,
)
from importhub.domain.imports.results import BatchImportResult

logger = logging.getLogger(__name__)


@dataclass
class RollbackReport:
    deleted: Dict[str, int] = field(default_factory=dict)
    reopened: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


def _ids(values: List[str]) -> Set[str]:
    return {value for value in values if value}


def _rollback_opportunities(session: Session, result: BatchImportResult, report: RollbackReport) -> None:
    opportunities = result.opportunities
    if opportunities is None or not opportunities.created_ids:
        return
    ids = _ids(opportunities.created_ids)
    session.query(PurchaseProduct).filter(PurchaseProduct.opportunity_id.in_(ids)).delete(synchronize_session=False)
    report.deleted["opportunities"] = (
        session.query(Opportunity).filter(Opportunity.id.in_(ids)).delete(synchronize_session=False)
    )


def _rollback_products(session: Session, result: BatchImportResult, report: RollbackReport) -> None:
    products = result.products
    if products is None:
        return
    doomed = _ids(products.created_ids)
    superseded = _ids(products.superseded_ids)
    if superseded:
        closed = session.query(Product).filter(Product.id.in_(superseded)).all()
        item_numbers = {product.item_number for product in closed}
        # Versions written by this run replace the superseded rows.
        versions = (
            session.query(Product.id)
            .filter(Product.id.in_(_ids(products.updated_ids)), Product.item_number.in_(item_numbers))
            .all()
        )
        doomed.update(row.id for row in versions)
    if doomed:
        session.query(PurchaseProduct).filter(PurchaseProduct.product_id.in_(doomed)).delete(
            synchronize_session=False
        )
        report.deleted["products"] = (
            session.query(Product).filter(Product.id.in_(doomed)).delete(synchronize_session=False)
        )
        session.flush()
    if superseded:
        for product in session.query(Product).filter(Product.id.in_(superseded)).all():
            product.is_current_record_flag = True
            product.scd_end_date = None
            report.reopened += 1


def _rollback_accounts(session: Session, result: BatchImportResult, report: RollbackReport) -> None:
    ids: Set[str] = set()
    if result.accounts is not None:
        ids.update(_ids(result.accounts.created_ids))
    if result.opportunities is not None:
        ids.update(_ids(result.opportunities.related_created_ids.get("accounts", [])))
    if not ids:
        return
    session.query(VectorChunk).filter(
        VectorChunk.owner_type == "account", VectorChunk.owner_id.in_(ids)
    ).delete(synchronize_session=False)
    session.query(AccountInsight).filter(AccountInsight.account_id.in_(ids)).delete(synchronize_session=False)
    report.deleted["accounts"] = (
        session.query(CompanyAccount).filter(CompanyAccount.id.in_(ids)).delete(synchronize_session=False)
    )


def _rollback_assets(session: Session, result: BatchImportResult, report: RollbackReport) -> None:
    assets = result.assets
    if assets is None:
        return
    ids = _ids(assets.created_ids + assets.related_created_ids.get("documents", []))
    if not ids:
        return
    session.query(VectorChunk).filter(
        VectorChunk.owner_type == "document", VectorChunk.owner_id.in_(ids)
    ).delete(synchronize_session=False)
    report.deleted["assets"] = (
        session.query(Document).filter(Document.id.in_(ids)).delete(synchronize_session=False)
    )


ROLLBACK_STEPS: List[tuple] = [
    ("opportunities", _rollback_opportunities),
    ("products", _rollback_products),
    ("accounts", _rollback_accounts),
    ("assets", _rollback_assets),
]


def rollback_batch(session_factory: sessionmaker, result: BatchImportResult) -> RollbackReport:
    """Delete every record this run created. Never raises; failures are reported."""
    report = RollbackReport()
    for name, step in ROLLBACK_STEPS:
        _run_step(session_factory, name, step, result, report)
    logger.info(
        "Rollback for job %s finished: deleted=%s reopened=%d errors=%d",
        result.job_id,
        report.deleted,
        report.reopened,
        len(report.errors),
    )
    return report


def _run_step(
    session_factory: sessionmaker,
    name: str,
    step: Callable[[Session, BatchImportResult, RollbackReport], None],
    result: BatchImportResult,
    report: RollbackReport,
) -> None:
    session = session_factory()
    try:
        step(session, result, report)
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.error("Rollback of %s failed: %s", name, exc)
        report.errors.append(f"Rollback of {name} failed: {exc}")
    finally:
        session.close()
