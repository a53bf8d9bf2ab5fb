"""Cashflow summary over Finances API events."""

import asyncio
from typing import Optional
import structlog

from marketsync.backend import Backend
from marketsync.config import settings
from marketsync.errors import RemoteRequestError
from marketsync.finance.cashflow import CashflowSummary, parse_date_range, summarize_cashflow
from marketsync.finance.events import normalize_financial_events
from marketsync.models import RunStatus
from marketsync.monitoring import metrics
from marketsync.spapi.client import SPAPIClient
from marketsync.sync.base import utcnow

logger = structlog.get_logger(__name__)

CASHFLOW_FACT_TABLE = "cashflow_summaries"
CASHFLOW_FACT_KEYS = ["company_id", "start", "end"]
REPORT_TYPE_NAME = "FINANCIAL_EVENTS"


class CashflowSync:
    """Fetches financial events for a date window and stores the bucketed summary."""

    def __init__(
        self,
        client: SPAPIClient,
        backend: Backend,
        company_id: str,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.backend = backend
        self.company_id = company_id
        self.timeout = timeout or settings.financial_events_timeout_seconds

    async def run(self, start: str, end: str) -> CashflowSummary:
        """
        Summarize cashflow between two ``YYYY-MM-DD`` dates, inclusive.

        Args:
            start: First day
            end: Last day

        Returns:
            CashflowSummary

        Raises:
            ValueError: On an invalid window (nothing is recorded)
            RemoteRequestError: If the Finances API fails or exceeds its time budget
        """
        posted_after, posted_before = parse_date_range(start, end)
        now = utcnow()
        if posted_after > now:
            raise ValueError("Start date must not be in the future.")
        # Finances API rejects PostedBefore values in the future
        posted_before = min(posted_before, now)

        run_id = self.backend.create_run(
            company_id=self.company_id,
            channel="amazon",
            report_type=REPORT_TYPE_NAME,
            status=RunStatus.PROCESSING,
            data_start_time=posted_after,
            data_end_time=posted_before,
            started_at=utcnow(),
        )
        log = logger.bind(run_id=run_id, company_id=self.company_id, start=start, end=end)

        metrics.active_sync_runs.inc()
        try:
            try:
                payload, warnings = await asyncio.wait_for(
                    self.client.list_financial_events(posted_after, posted_before),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                raise RemoteRequestError(
                    f"Financial events fetch exceeded {self.timeout:g}s.",
                    status_code=504,
                )

            entries = normalize_financial_events(payload)
            summary = summarize_cashflow(entries, warnings)

            written = self.backend.upsert_facts(
                CASHFLOW_FACT_TABLE,
                [{"company_id": self.company_id, "start": start, "end": end, **summary.to_dict()}],
                CASHFLOW_FACT_KEYS,
                run_id=run_id,
            )
            self.backend.update_run(
                run_id,
                status=RunStatus.COMPLETED,
                completed_at=utcnow(),
                row_count=summary.entries_count,
                facts_upserted=written,
            )
            metrics.sync_runs_total.labels(report_type=REPORT_TYPE_NAME, status="completed").inc()
            log.info(
                "cashflow_summarized",
                entries=summary.entries_count,
                event_groups=summary.event_groups_count,
                currencies=sorted(summary.totals_by_currency),
                warnings=len(summary.warnings),
            )
            return summary

        except asyncio.CancelledError:
            self._mark_failed(run_id, "Sync cancelled.")
            log.warning("cashflow_sync_cancelled")
            raise
        except Exception as e:
            self._mark_failed(run_id, str(e))
            log.error("cashflow_sync_failed", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            metrics.active_sync_runs.dec()

    def _mark_failed(self, run_id: str, message: str) -> None:
        self.backend.update_run(run_id, status=RunStatus.FAILED, completed_at=utcnow(), error_message=message)
        metrics.sync_runs_total.labels(report_type=REPORT_TYPE_NAME, status="failed").inc()
