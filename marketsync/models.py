"""Database models for run records, fact rows and sync watermarks."""

from enum import Enum
from sqlalchemy import (
    Column, String, DateTime, Integer, Text, Enum as SQLEnum, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class RunStatus(str, Enum):
    """User-visible run status."""
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportRun(Base):
    """One orchestrator run: submit, poll, fetch, parse, upsert."""

    __tablename__ = "channel_report_runs"

    id = Column(String(36), primary_key=True)
    company_id = Column(String(100), nullable=False, index=True)
    channel = Column(String(20), nullable=False, default="amazon")
    marketplace_id = Column(String(20), nullable=True)
    report_type = Column(String(100), nullable=False, index=True)

    # Status
    status = Column(SQLEnum(RunStatus), default=RunStatus.REQUESTED, nullable=False, index=True)

    # Remote identifiers
    report_id = Column(String(100), nullable=True)
    report_document_id = Column(String(200), nullable=True)
    remote_status = Column(String(30), nullable=True)

    # Requested window
    data_start_time = Column(DateTime(timezone=True), nullable=True)
    data_end_time = Column(DateTime(timezone=True), nullable=True)

    # Progress
    row_count = Column(Integer, default=0)
    facts_upserted = Column(Integer, default=0)
    skipped_rows = Column(Integer, default=0)

    # Timing
    requested_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Payloads
    report_request = Column(JSON, nullable=True)
    report_response = Column(JSON, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ReportRun {self.id} type={self.report_type} status={self.status}>"


class FactRow(Base):
    """A row upserted into a named fact table, unique on its natural key."""

    __tablename__ = "fact_rows"
    __table_args__ = (UniqueConstraint("table_name", "natural_key", name="uq_fact_rows_natural_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    table_name = Column(String(100), nullable=False, index=True)
    natural_key = Column(String(64), nullable=False)  # sha256 of the conflict columns
    company_id = Column(String(100), nullable=True, index=True)
    group_key = Column(String(200), nullable=True, index=True)  # parent entity, e.g. order id

    key_values = Column(JSON, nullable=False)
    payload = Column(JSON, nullable=False)

    run_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<FactRow {self.table_name} key={self.natural_key[:12]}>"


class SyncState(Base):
    """Incremental sync watermark per company, source and marketplace."""

    __tablename__ = "sync_state"
    __table_args__ = (
        UniqueConstraint("company_id", "source_key", "marketplace_id", name="uq_sync_state_source"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(String(100), nullable=False)
    source_key = Column(String(50), nullable=False)
    marketplace_id = Column(String(20), nullable=False)

    watermark = Column(DateTime(timezone=True), nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    def __repr__(self):
        return f"<SyncState {self.company_id}/{self.source_key}/{self.marketplace_id} watermark={self.watermark}>"
