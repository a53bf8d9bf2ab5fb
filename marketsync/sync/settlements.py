"""Settlement report listing, preview and normalization."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import structlog

from marketsync.backend import Backend
from marketsync.config import settings
from marketsync.errors import MarketSyncError
from marketsync.models import RunStatus
from marketsync.parsing.settlement import SettlementPreview, normalize_settlement, preview_settlement
from marketsync.reports.document import DocumentFetcher
from marketsync.reports.job import ReportJob, ReportStatus, ReportType
from marketsync.reports.poller import ReportPoller
from marketsync.spapi.client import ReportStatusResponse, SPAPIClient
from marketsync.sync.base import ReportSyncOrchestrator, RunProgress, utcnow

logger = structlog.get_logger(__name__)


def attached_job(report_id: str, marketplace_id: str) -> ReportJob:
    """
    Job for a report Amazon generated on its own schedule.

    Settlement reports are never requested, so the job starts out processing
    and is only polled.
    """
    return ReportJob(
        report_type=ReportType.SETTLEMENT_V2_FLAT_FILE,
        marketplace_id=marketplace_id,
        status=ReportStatus.PROCESSING,
        report_id=report_id,
    )


def _report_summary(report: ReportStatusResponse) -> Dict[str, Any]:
    return {
        "report_id": report.report_id,
        "report_type": report.report_type,
        "processing_status": report.processing_status,
        "report_document_id": report.report_document_id,
        "data_start_time": report.data_start_time,
        "data_end_time": report.data_end_time,
        "created_time": report.created_time,
    }


class SettlementReports:
    """Read-only access to settlement reports: listing and preview."""

    def __init__(
        self,
        client: SPAPIClient,
        marketplace_id: Optional[str] = None,
        poller: Optional[ReportPoller] = None,
        fetcher: Optional[DocumentFetcher] = None,
    ):
        self.client = client
        self.marketplace_id = marketplace_id or settings.default_marketplace_id
        self.poller = poller or ReportPoller(client)
        self.fetcher = fetcher or DocumentFetcher(transport=client.transport)

    async def list_reports(self, next_token: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        List settlement reports, one page at a time.

        Returns:
            Tuple of (report summaries, continuation token)
        """
        reports, token = await self.client.list_reports(
            [ReportType.SETTLEMENT_V2_FLAT_FILE],
            next_token=next_token,
        )
        logger.info("settlement_reports_listed", count=len(reports), has_more=bool(token))
        return [_report_summary(r) for r in reports], token

    async def fetch_text(self, report_id: str) -> str:
        """Wait for the report, then download its document. Empty reports yield ''."""
        job = attached_job(report_id, self.marketplace_id)
        document_id = await self.poller.poll(job)
        if document_id is None:
            return ""
        document = await self.client.get_report_document(document_id)
        return await self.fetcher.fetch(document)

    async def preview(self, report_id: str, max_rows: Optional[int] = None) -> SettlementPreview:
        """
        Preview a settlement report.

        Args:
            report_id: Settlement report ID
            max_rows: Row cap (defaults to SETTLEMENT_PREVIEW_ROWS)
        """
        text = await self.fetch_text(report_id)
        preview = preview_settlement(text, max_rows or settings.settlement_preview_rows)
        logger.info(
            "settlement_previewed",
            report_id=report_id,
            rows=preview.row_count,
            currencies=sorted(preview.totals_by_currency),
        )
        return preview


class SettlementNormalizeSync(ReportSyncOrchestrator):
    """Normalizes one settlement report and stages it as a settlement batch."""

    report_type = ReportType.SETTLEMENT_V2_FLAT_FILE

    def __init__(
        self,
        client: SPAPIClient,
        backend: Backend,
        company_id: str,
        report_id: str,
        marketplace_id: Optional[str] = None,
        poller: Optional[ReportPoller] = None,
        fetcher: Optional[DocumentFetcher] = None,
    ):
        super().__init__(client, backend, company_id, marketplace_id, poller, fetcher)
        self.report_id = report_id

    def build_job(self, start: Optional[datetime], end: Optional[datetime]) -> ReportJob:
        return attached_job(self.report_id, self.marketplace_id)

    async def acquire_document(self, job: ReportJob, run_id: str) -> Optional[str]:
        self.backend.update_run(run_id, status=RunStatus.PROCESSING, started_at=utcnow())
        return await self.poller.poll(job)

    async def process(self, text: str, run_id: str, progress: RunProgress) -> Dict[str, Any]:
        """
        Raises:
            ParseError: If the report has no rows or no summary row
        """
        normalized = normalize_settlement(text, self.report_id)
        progress.row_count = len(normalized.rows)

        summary = normalized.summary
        result = self.backend.call_procedure("erp_marketplace_settlement_batch_upsert", {
            "p_company_id": self.company_id,
            "p_report_id": self.report_id,
            "p_summary": {
                "settlement_id": summary.settlement_id,
                "period_start": summary.period_start,
                "period_end": summary.period_end,
                "deposit_date": summary.deposit_date,
                "total_amount": summary.total_amount,
                "currency": summary.currency,
                "report_run_id": run_id,
            },
            "p_rows": normalized.rows,
        })
        if not isinstance(result, dict) or "batch_id" not in result:
            raise MarketSyncError("Settlement batch upsert returned no batch id.")

        progress.facts_upserted = int(result.get("inserted_rows") or 0)
        return {
            "batch_id": result["batch_id"],
            "settlement_id": summary.settlement_id,
            "attempted_rows": result.get("attempted_rows", len(normalized.rows)),
            "inserted_rows": progress.facts_upserted,
            "period_start": summary.period_start,
            "period_end": summary.period_end,
        }
