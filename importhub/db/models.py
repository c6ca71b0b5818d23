"""
ORM models for imported business records and batch import jobs.

Identifiers are UUID strings generated client-side so importers can report
created ids before the transaction that persisted them is inspected again.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from importhub.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class DocumentStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PARSING = "PARSING"
    CHUNKING = "CHUNKING"
    VECTORIZING = "VECTORIZING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value}


class CompanyAccount(Base):
    __tablename__ = "company_accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    account_number = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)
    domain = Column(String(255), unique=True, nullable=True)
    industry = Column(String(255))
    size = Column(String(100))
    location = Column(String(255))
    description = Column(Text)
    website = Column(String(500))
    gem_status = Column(String(100))
    gem_index = Column(String(100))
    crm_owner = Column(String(255))
    target_solutions = Column(Text)
    recommended_solution = Column(Text)
    customer_segment = Column(String(255))
    program_category = Column(String(255))
    summary = Column(Text)
    extra_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Product(Base):
    """Product catalogue row; several rows may share an item number (SCD history)."""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_new_id)
    item_number = Column(String(100), nullable=False, index=True)
    item_description = Column(Text)
    item_type_code = Column(Integer)
    item_type_description = Column(String(255))
    product_type = Column(String(255))
    item_revenue_category = Column(String(255))
    item_manufacturer = Column(String(255))
    item_category = Column(String(255))
    item_line_of_business = Column(String(255))
    item_subcategory = Column(String(255))
    item_class = Column(String(255))
    portfolio = Column(String(255))
    current_cost = Column(Float)
    solution_segment = Column(String(255))
    business_segment = Column(String(255))
    growth_category = Column(String(255))
    scd_start_date = Column(DateTime(timezone=True), default=_utcnow)
    scd_end_date = Column(DateTime(timezone=True), nullable=True)
    is_current_record_flag = Column(Boolean, nullable=False, default=True)
    extra_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Opportunity(Base):
    __tablename__ = "opportunities"

    id = Column(String(36), primary_key=True, default=_new_id)
    opportunity_number = Column(String(100), unique=True, nullable=False, index=True)
    customer_name = Column(String(255), nullable=False)
    opp_stage = Column(String(100))
    sales_person = Column(String(255))
    sales_director = Column(String(255))
    booked_gross_revenue = Column(Float, default=0)
    pipeline_gross_revenue = Column(Float, default=0)
    margin = Column(Float, default=0)
    booked_date = Column(DateTime(timezone=True))
    estimated_close_date = Column(DateTime(timezone=True))
    account_id = Column(String(36), ForeignKey("company_accounts.id"), nullable=False, index=True)
    extra_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class PurchaseProduct(Base):
    """Association between an opportunity and a product named on the same import row."""
    __tablename__ = "purchase_products"
    __table_args__ = (UniqueConstraint("opportunity_id", "product_id", name="uq_purchase_product"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    opportunity_id = Column(String(36), ForeignKey("opportunities.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    gp_revenue_category = Column(String(255))
    mapped_solution_area = Column(String(255))
    mapped_segment = Column(String(255))
    mapped_capability = Column(String(255))
    item_category = Column(String(255))
    quantity = Column(Float)
    unit_price = Column(Float)
    total_value = Column(Float)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_new_id)
    file_name = Column(String(500), nullable=False)
    original_name = Column(String(500))
    file_size = Column(Integer, default=0)
    file_type = Column(String(50))
    mime_type = Column(String(255))
    status = Column(String(20), nullable=False, default=DocumentStatus.UPLOADED.value)
    title = Column(String(500))
    category = Column(String(255))
    scope = Column(String(50), default="GENERAL")
    account_id = Column(String(36), ForeignKey("company_accounts.id"), nullable=True)
    total_blocks = Column(Integer, default=0)
    total_chunks = Column(Integer, default=0)
    error_message = Column(Text)
    uploaded_at = Column(DateTime(timezone=True), default=_utcnow)
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class VectorChunk(Base):
    """Text chunk of an account profile or document plus its embedding."""
    __tablename__ = "vector_chunks"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_type = Column(String(50), nullable=False, index=True)
    owner_id = Column(String(36), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=True)
    extra_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class AccountInsight(Base):
    __tablename__ = "account_insights"

    id = Column(String(36), primary_key=True, default=_new_id)
    account_id = Column(String(36), ForeignKey("company_accounts.id"), nullable=False, index=True)
    job_id = Column(String(36), nullable=True)
    source = Column(String(50), default="import")
    content = Column(Text, nullable=False)
    model = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class BatchImportJob(Base):
    __tablename__ = "batch_import_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    type = Column(String(50), nullable=False, index=True)
    queue = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    message = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    options = Column(JSON, default=dict)
    result = Column(JSON, nullable=True)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    heartbeat_at = Column(DateTime(timezone=True))

    stages = relationship(
        "JobStage",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobStage.position",
    )


class JobStage(Base):
    __tablename__ = "batch_import_job_stages"
    __table_args__ = (UniqueConstraint("job_id", "name", name="uq_job_stage_name"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("batch_import_jobs.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value)
    progress = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)

    job = relationship("BatchImportJob", back_populates="stages")
