"""
Per-entity and batch-level import options.

Options arrive as JSON blobs next to uploaded files. Both snake_case and the
camelCase spelling used by existing clients (``skipDuplicates``) are accepted.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


ENTITY_TYPES = ("accounts", "products", "opportunities", "assets")
DEFAULT_PROCESS_ORDER = ["accounts", "products", "opportunities", "assets"]


class DuplicatePolicy(str, Enum):
    SKIP = "skip"
    UPDATE = "update"
    REJECT = "reject"


class ImportOptionsBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    skip_duplicates: bool = False
    update_existing: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)

    @property
    def duplicate_policy(self) -> DuplicatePolicy:
        if self.update_existing:
            return DuplicatePolicy.UPDATE
        if self.skip_duplicates:
            return DuplicatePolicy.SKIP
        return DuplicatePolicy.REJECT


class AccountImportOptions(ImportOptionsBase):
    generate_summaries: bool = False
    store_vectors: bool = False
    validate_domains: bool = False


class ProductImportOptions(ImportOptionsBase):
    enable_scd: bool = True


class OpportunityImportOptions(ImportOptionsBase):
    create_missing_accounts: bool = False
    link_products: bool = False


class AssetImportOptions(ImportOptionsBase):
    generate_chunks: bool = False
    store_vectors: bool = False
    detect_category: bool = False
    max_file_size: Optional[int] = None  # bytes
    allowed_mime_types: Optional[List[str]] = None


OPTIONS_BY_ENTITY = {
    "accounts": AccountImportOptions,
    "products": ProductImportOptions,
    "opportunities": OpportunityImportOptions,
    "assets": AssetImportOptions,
}


class BatchImportOptions(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    process_order: List[str] = Field(default_factory=lambda: list(DEFAULT_PROCESS_ORDER))
    generate_insights: bool = False
    validate_relationships: bool = False
    rollback_on_error: bool = False
    continue_on_error: bool = False

    @field_validator("process_order")
    @classmethod
    def validate_process_order(cls, value: List[str]) -> List[str]:
        normalized = [entry.strip().lower() for entry in value]
        unknown = [entry for entry in normalized if entry not in ENTITY_TYPES]
        if unknown:
            raise ValueError(f"Unknown entity types in process_order: {unknown}")
        if len(set(normalized)) != len(normalized):
            raise ValueError("process_order must not repeat an entity type")
        return normalized
