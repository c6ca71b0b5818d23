import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.embeddings import Embeddings
from sqlalchemy import func
from sqlalchemy.orm import Session

from importhub.db.models import CompanyAccount
from importhub.domain.imports.chunking import embed_chunks, replace_chunk_vectors
from importhub.domain.imports.importers.base import (
    EntityImporter,
    PreparedRecord,
    run_advisory,
)
from importhub.domain.imports.mapper import MappedRow, normalize_header
from importhub.domain.imports.options import AccountImportOptions
from importhub.domain.imports.progress import Checkpoint
from importhub.domain.imports.results import EntityImportResult
from importhub.domain.imports.validators import is_valid_domain, normalize_domain
from importhub.integrations.ai import AccountSummarizer, account_profile_text

logger = logging.getLogger(__name__)

ACCOUNT_ALIASES = [
    ("account_number", "account_number"),
    ("account_no", "account_number"),
    ("customer_number", "account_number"),
    ("account_name", "name"),
    ("company_name", "name"),
    ("company", "name"),
    ("name", "name"),
    ("account_domain", "domain"),
    ("company_domain", "domain"),
    ("domain", "domain"),
    ("account_industry", "industry"),
    ("company_industry", "industry"),
    ("industry", "industry"),
    ("account_size", "size"),
    ("company_size", "size"),
    ("employees", "size"),
    ("account_location", "location"),
    ("company_location", "location"),
    ("location", "location"),
    ("account_description", "description"),
    ("company_description", "description"),
    ("description", "description"),
    ("account_website", "website"),
    ("company_website", "website"),
    ("website", "website"),
    ("gem_status", "gem_status"),
    ("gem_index", "gem_index"),
    ("crm_owner", "crm_owner"),
    ("account_owner", "crm_owner"),
    ("target_solutions", "target_solutions"),
    ("recommended_solution", "recommended_solution"),
    ("final_customer_segment", "customer_segment"),
    ("ce_customer_segment", "customer_segment"),
    ("customer_segment", "customer_segment"),
    ("program_category", "program_category"),
]

# Intent and vendor signal columns are kept together in metadata.
SIGNAL_COLUMNS = {
    "ccintent", "ccvendor", "ucintent", "ucvendor", "dcintent", "dcvendor",
    "enintent", "envendor", "sxintent", "sxvendor", "battlecardnotes", "competitorresearch",
}

ACCOUNT_COLUMNS = (
    "account_number", "name", "domain", "industry", "size", "location", "description",
    "website", "gem_status", "gem_index", "crm_owner", "target_solutions",
    "recommended_solution", "customer_segment", "program_category",
)


def generate_account_number() -> str:
    return f"ACC-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


class AccountImporter(EntityImporter):
    entity = "accounts"
    label = "Account"
    options_model = AccountImportOptions
    rules = ACCOUNT_ALIASES
    batch_size_setting = "account_batch_size"

    def __init__(
        self,
        session_factory,
        settings,
        *,
        summarizer: Optional[AccountSummarizer] = None,
        embeddings: Optional[Embeddings] = None,
        **kwargs,
    ):
        super().__init__(session_factory, settings, **kwargs)
        self.summarizer = summarizer
        self.embeddings = embeddings

    def normalize(self, mapped: MappedRow, options: AccountImportOptions) -> Dict[str, Any]:
        values = dict(mapped.values)
        if values.get("domain"):
            values["domain"] = normalize_domain(values["domain"])
        elif values.get("website"):
            values["domain"] = normalize_domain(values["website"])
        if values.get("name"):
            values["name"] = values["name"].strip()
        return values

    def describe(self, values: Dict[str, Any], row: int) -> str:
        return values.get("name") or f"Row {row}"

    def validate(self, values: Dict[str, Any], options: AccountImportOptions) -> Tuple[List[str], List[str]]:
        errors: List[str] = []
        warnings: List[str] = []
        name = values.get("name")
        if not name:
            errors.append("Account name is required")
        elif len(name) > 255:
            errors.append("Account name exceeds maximum length (255 characters)")

        domain = values.get("domain")
        if domain and not is_valid_domain(domain):
            message = f"Invalid domain format: {domain}"
            if options.validate_domains:
                errors.append(message)
            else:
                warnings.append(message)
                values["domain"] = None

        description = values.get("description")
        if description and len(description) > 2000:
            warnings.append("Description is very long and may be truncated")
        return errors, warnings

    def lock_keys(self, record: PreparedRecord) -> List[str]:
        return account_lock_keys(record.values)

    def find_existing(self, session: Session, record: PreparedRecord) -> Optional[CompanyAccount]:
        return find_account(
            session,
            domain=record.values.get("domain"),
            account_number=record.values.get("account_number"),
            name=record.values.get("name"),
        )

    def create_record(self, session, record, options, outcome) -> CompanyAccount:
        values = {column: record.values.get(column) for column in ACCOUNT_COLUMNS}
        values["account_number"] = values["account_number"] or generate_account_number()
        account = CompanyAccount(**values, extra_metadata=_split_metadata(record.metadata))
        session.add(account)
        return account

    def update_record(self, session, existing: CompanyAccount, record, options, outcome) -> CompanyAccount:
        for column in ACCOUNT_COLUMNS:
            value = record.values.get(column)
            if value is not None:
                setattr(existing, column, value)
        if record.metadata:
            merged = dict(existing.extra_metadata or {})
            merged.update(_split_metadata(record.metadata))
            existing.extra_metadata = merged
        return existing

    def post_process(self, result: EntityImportResult, options: AccountImportOptions, checkpoint: Checkpoint) -> None:
        if not (options.generate_summaries or options.store_vectors):
            return
        if options.generate_summaries and self.summarizer is None:
            result.add_warning("Summary provider not configured; account summaries skipped")
        if options.store_vectors and self.embeddings is None:
            result.add_warning("Embedding provider not configured; account vectors not stored")

        for account_id in result.created_ids + result.updated_ids:
            checkpoint()
            if options.generate_summaries and self.summarizer is not None:
                if run_advisory(result, f"Summary for account {account_id}",
                                lambda: self._summarize(account_id)):
                    result.bump("summaries_generated")
            if options.store_vectors and self.embeddings is not None:
                stored = run_advisory(result, f"Vectorization for account {account_id}",
                                      lambda: self._vectorize(account_id))
                if stored:
                    result.bump("vectors_stored", stored)

    def _summarize(self, account_id: str) -> bool:
        with self.session_factory() as session:
            account = session.get(CompanyAccount, account_id)
            if account is None:
                return False
            profile = {column: getattr(account, column) for column in ACCOUNT_COLUMNS}
        # The model call happens outside any open transaction.
        summary = self.summarizer.summarize_account(profile)
        with self.session_factory() as session:
            account = session.get(CompanyAccount, account_id)
            if account is None:
                return False
            account.summary = summary
            session.commit()
        return True

    def _vectorize(self, account_id: str) -> int:
        with self.session_factory() as session:
            account = session.get(CompanyAccount, account_id)
            if account is None:
                return 0
            text = account_profile_text(account)
        embedded = embed_chunks(
            self.embeddings,
            text,
            chunk_size=self.settings.chunk_size,
            overlap=self.settings.chunk_overlap,
        )
        with self.session_factory() as session:
            stored = replace_chunk_vectors(session, "account", account_id, embedded)
            session.commit()
        return stored


def _split_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    plain: Dict[str, Any] = {}
    signals: Dict[str, Any] = {}
    for key, value in metadata.items():
        if normalize_header(key) in SIGNAL_COLUMNS:
            signals[key] = value
        else:
            plain[key] = value
    if signals:
        plain["signals"] = signals
    return plain


def account_lock_keys(values: Dict[str, Any]) -> List[str]:
    keys = []
    if values.get("domain"):
        keys.append(f"accounts:domain:{values['domain'].lower()}")
    if values.get("account_number"):
        keys.append(f"accounts:number:{values['account_number'].lower()}")
    if values.get("name"):
        keys.append(f"accounts:name:{values['name'].strip().lower()}")
    return keys


def find_account(
    session: Session,
    *,
    account_id: Optional[str] = None,
    domain: Optional[str] = None,
    account_number: Optional[str] = None,
    name: Optional[str] = None,
) -> Optional[CompanyAccount]:
    """Match by id, domain, account number, then case-insensitive name."""
    if account_id:
        account = session.get(CompanyAccount, account_id)
        if account is not None:
            return account
    if domain:
        account = session.query(CompanyAccount).filter(CompanyAccount.domain == domain.lower()).first()
        if account is not None:
            return account
    if account_number:
        account = (
            session.query(CompanyAccount)
            .filter(CompanyAccount.account_number == account_number)
            .first()
        )
        if account is not None:
            return account
    if name:
        return (
            session.query(CompanyAccount)
            .filter(func.lower(CompanyAccount.name) == name.strip().lower())
            .order_by(CompanyAccount.created_at)
            .first()
        )
    return None
