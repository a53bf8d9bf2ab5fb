"""Pydantic schemas for API requests and responses."""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    version: str


# Sync job schemas
class SyncRequest(BaseModel):
    """Request to sync one report kind for a window."""
    marketplace_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    report_type: Optional[str] = Field(default=None, description="Inventory report type override")
    enqueue: bool = Field(default=False, description="Run on the worker instead of inline")

    @model_validator(mode="after")
    def check_window(self):
        if self.start and self.end and self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class SyncResultResponse(BaseModel):
    """Outcome of one orchestrator run."""
    run_id: str
    status: str
    report_type: str
    report_id: Optional[str] = None
    row_count: int = 0
    facts_upserted: int = 0
    skipped_rows: int = 0
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class SyncResponse(BaseModel):
    """Response for a sync request."""
    kind: str
    queued: bool
    task_id: Optional[str] = None
    results: List[SyncResultResponse] = Field(default_factory=list)


class RunStatusResponse(BaseModel):
    """Run record as shown to callers."""
    run_id: str
    status: str
    report_type: str
    marketplace_id: Optional[str]
    report_id: Optional[str]
    report_document_id: Optional[str]
    remote_status: Optional[str]
    row_count: int
    facts_upserted: int
    skipped_rows: int
    requested_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]


# Settlement schemas
class SettlementReportSummary(BaseModel):
    """Settlement report listing entry."""
    report_id: Optional[str]
    report_type: Optional[str]
    processing_status: Optional[str]
    report_document_id: Optional[str]
    data_start_time: Optional[str]
    data_end_time: Optional[str]
    created_time: Optional[str]


class SettlementListResponse(BaseModel):
    """One page of settlement reports."""
    reports: List[SettlementReportSummary]
    next_token: Optional[str]


class SettlementPreviewResponse(BaseModel):
    """Settlement report preview."""
    report_id: str
    raw_header: List[str]
    columns: List[str]
    rows: List[Dict[str, str]]
    totals_by_currency: Dict[str, str]
    row_count: int
    sample_count: int


class SettlementNormalizeResponse(BaseModel):
    """Settlement batch staged from a normalized report."""
    run_id: str
    report_id: str
    batch_id: Optional[str] = None
    settlement_id: Optional[str] = None
    attempted_rows: int = 0
    inserted_rows: int = 0
    period_start: Optional[str] = None
    period_end: Optional[str] = None


# Cashflow schemas
class BreakdownItem(BaseModel):
    key: str
    amount: str
    count: int


class CashflowResponse(BaseModel):
    """Bucketed cashflow for a date window."""
    start: str
    end: str
    totals_by_currency: Dict[str, Dict[str, str]]
    breakdown: Dict[str, List[BreakdownItem]]
    warnings: List[str]
    debug: Dict[str, int]
