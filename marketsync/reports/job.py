"""Report job state machine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from marketsync.errors import InvalidTransition


class ReportType(str, Enum):
    """Report types this pipeline knows how to request and parse."""
    FBA_MYI_UNSUPPRESSED_INVENTORY = "GET_FBA_MYI_UNSUPPRESSED_INVENTORY_DATA"
    FBA_MYI_ALL_INVENTORY = "GET_FBA_MYI_ALL_INVENTORY_DATA"
    AFN_INVENTORY = "GET_AFN_INVENTORY_DATA"
    ALL_ORDERS_BY_ORDER_DATE = "GET_FLAT_FILE_ALL_ORDERS_DATA_BY_ORDER_DATE_GENERAL"
    MFN_RETURNS_BY_RETURN_DATE = "GET_FLAT_FILE_RETURNS_DATA_BY_RETURN_DATE"
    FBA_CUSTOMER_RETURNS = "GET_FBA_FULFILLMENT_CUSTOMER_RETURNS_DATA"
    SETTLEMENT_V2_FLAT_FILE = "GET_V2_SETTLEMENT_REPORT_DATA_FLAT_FILE"

    @classmethod
    def parse(cls, value: str) -> "ReportType":
        """Resolve a report type string, rejecting unsupported ones."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unsupported reportType: {value}")


class ReportStatus(str, Enum):
    """Lifecycle status of a report job."""
    REQUESTED = "REQUESTED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    DONE_NO_DATA = "DONE_NO_DATA"
    FATAL = "FATAL"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES


SUCCESS_STATUSES = frozenset({ReportStatus.DONE, ReportStatus.DONE_NO_DATA})
FAILURE_STATUSES = frozenset({ReportStatus.FATAL, ReportStatus.CANCELLED, ReportStatus.ERROR})
TERMINAL_STATUSES = SUCCESS_STATUSES | FAILURE_STATUSES


def normalize_remote_status(value: Optional[str]) -> ReportStatus:
    """
    Map an SP-API processingStatus onto the job lifecycle.

    IN_QUEUE, IN_PROGRESS and anything unknown keep the job processing.
    """
    normalized = (value or "").strip().upper()
    try:
        status = ReportStatus(normalized)
    except ValueError:
        return ReportStatus.PROCESSING
    if status == ReportStatus.REQUESTED:
        return ReportStatus.PROCESSING
    return status


@dataclass
class ReportJob:
    """One asynchronous bulk report request."""

    report_type: ReportType
    marketplace_id: str
    data_start_time: Optional[datetime] = None
    data_end_time: Optional[datetime] = None
    status: ReportStatus = ReportStatus.REQUESTED
    report_id: Optional[str] = None
    document_id: Optional[str] = None
    remote_status: Optional[str] = None
    history: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: ReportStatus, remote_status: Optional[str] = None) -> None:
        """
        Move the job to a new status.

        Raises:
            InvalidTransition: If the job is already terminal, or the move
                skips the PROCESSING phase
        """
        if self.status.is_terminal:
            raise InvalidTransition(
                f"Report job {self.report_id or '<unsubmitted>'} is terminal ({self.status.value})"
            )
        if status == ReportStatus.REQUESTED:
            raise InvalidTransition("Report jobs cannot return to REQUESTED")
        if self.status == ReportStatus.REQUESTED and status != ReportStatus.PROCESSING:
            raise InvalidTransition(f"REQUESTED jobs must be submitted before reaching {status.value}")

        self.status = status
        if remote_status is not None:
            self.remote_status = remote_status
        self.history.append(status.value)
