"""Report sync orchestration: submit, poll, fetch, parse, upsert."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar
import structlog

from marketsync.backend import UPSERT_CHUNK_SIZE, Backend
from marketsync.config import settings
from marketsync.models import RunStatus
from marketsync.monitoring import metrics
from marketsync.reports.document import DocumentFetcher
from marketsync.reports.job import ReportJob, ReportType
from marketsync.reports.poller import ReportPoller
from marketsync.spapi.client import SPAPIClient

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_WINDOW_DAYS = 30


@dataclass
class RunProgress:
    """Counters kept current so a failed run still reports what it achieved."""

    row_count: int = 0
    facts_upserted: int = 0
    skipped_rows: int = 0


@dataclass
class SyncResult:
    """Outcome of one orchestrator run."""

    run_id: str
    status: RunStatus
    report_type: str
    report_id: Optional[str] = None
    row_count: int = 0
    facts_upserted: int = 0
    skipped_rows: int = 0
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "report_type": self.report_type,
            "report_id": self.report_id,
            "row_count": self.row_count,
            "facts_upserted": self.facts_upserted,
            "skipped_rows": self.skipped_rows,
            "error": self.error,
            **self.details,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReportSyncOrchestrator:
    """
    Template for report-backed syncs.

    Subclasses set ``report_type`` and implement ``process``. The run record
    moves requested -> processing -> completed, or to failed with the
    counts reached so far.
    """

    report_type: ReportType
    fact_table: str = ""

    def __init__(
        self,
        client: SPAPIClient,
        backend: Backend,
        company_id: str,
        marketplace_id: Optional[str] = None,
        poller: Optional[ReportPoller] = None,
        fetcher: Optional[DocumentFetcher] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            client: SP-API client
            backend: Persistence backend
            company_id: Tenant the rows belong to
            marketplace_id: Marketplace (defaults to DEFAULT_MARKETPLACE_ID)
            poller: Report poller (built from client if omitted)
            fetcher: Document fetcher (built with the client's transport if omitted)
        """
        self.client = client
        self.backend = backend
        self.company_id = company_id
        self.marketplace_id = marketplace_id or settings.default_marketplace_id
        self.poller = poller or ReportPoller(client)
        self.fetcher = fetcher or DocumentFetcher(transport=client.transport)

    @property
    def report_type_name(self) -> str:
        return self.report_type.value

    def build_job(self, start: Optional[datetime], end: Optional[datetime]) -> ReportJob:
        end = end or utcnow()
        start = start or end - timedelta(days=DEFAULT_WINDOW_DAYS)
        return ReportJob(
            report_type=self.report_type,
            marketplace_id=self.marketplace_id,
            data_start_time=start,
            data_end_time=end,
        )

    async def acquire_document(self, job: ReportJob, run_id: str) -> Optional[str]:
        """Submit and poll; returns the document id or None for an empty report."""
        await self.poller.submit(job)
        self.backend.update_run(
            run_id,
            status=RunStatus.PROCESSING,
            report_id=job.report_id,
            started_at=utcnow(),
        )
        return await self.poller.poll(job)

    async def process(self, text: str, run_id: str, progress: RunProgress) -> Dict[str, Any]:
        """
        Parse the document and upsert its rows.

        Returns:
            Extra result details
        """
        raise NotImplementedError

    async def run(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> SyncResult:
        """
        Execute one sync run end to end.

        Raises:
            MarketSyncError: The phase error, after the run is marked failed
            asyncio.CancelledError: After the run is marked failed
        """
        job = self.build_job(start, end)
        run_id = self.backend.create_run(
            company_id=self.company_id,
            channel="amazon",
            marketplace_id=self.marketplace_id,
            report_type=self.report_type_name,
            status=RunStatus.REQUESTED,
            report_id=job.report_id,
            data_start_time=job.data_start_time,
            data_end_time=job.data_end_time,
        )
        progress = RunProgress()
        log = logger.bind(run_id=run_id, report_type=self.report_type_name, company_id=self.company_id)
        log.info("sync_run_started")

        metrics.active_sync_runs.inc()
        try:
            document_id = await self.acquire_document(job, run_id)
            self.backend.update_run(
                run_id,
                status=RunStatus.PROCESSING,
                report_id=job.report_id,
                report_document_id=document_id,
                remote_status=job.remote_status,
            )

            details: Dict[str, Any] = {}
            if document_id is None:
                log.info("report_has_no_data")
            else:
                document = await self.client.get_report_document(document_id)
                text = await self.fetcher.fetch(document)
                details = await self.process(text, run_id, progress) or {}

            self.backend.update_run(
                run_id,
                status=RunStatus.COMPLETED,
                completed_at=utcnow(),
                row_count=progress.row_count,
                facts_upserted=progress.facts_upserted,
                skipped_rows=progress.skipped_rows,
            )
            metrics.sync_runs_total.labels(report_type=self.report_type_name, status="completed").inc()
            log.info(
                "sync_run_completed",
                rows=progress.row_count,
                facts=progress.facts_upserted,
                skipped=progress.skipped_rows,
            )
            return SyncResult(
                run_id=run_id,
                status=RunStatus.COMPLETED,
                report_type=self.report_type_name,
                report_id=job.report_id,
                row_count=progress.row_count,
                facts_upserted=progress.facts_upserted,
                skipped_rows=progress.skipped_rows,
                details=details,
            )

        except asyncio.CancelledError:
            self._mark_failed(run_id, job, progress, "Sync cancelled.")
            log.warning("sync_run_cancelled", rows=progress.row_count)
            raise
        except Exception as e:
            self._mark_failed(run_id, job, progress, str(e))
            log.error("sync_run_failed", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            metrics.active_sync_runs.dec()

    def _mark_failed(self, run_id: str, job: ReportJob, progress: RunProgress, message: str) -> None:
        self.backend.update_run(
            run_id,
            status=RunStatus.FAILED,
            report_id=job.report_id,
            remote_status=job.remote_status,
            completed_at=utcnow(),
            row_count=progress.row_count,
            facts_upserted=progress.facts_upserted,
            skipped_rows=progress.skipped_rows,
            error_message=message,
        )
        metrics.sync_runs_total.labels(report_type=self.report_type_name, status="failed").inc()

    async def upsert_in_chunks(
        self,
        rows: Sequence[Mapping[str, Any]],
        write: Callable[[Sequence[Mapping[str, Any]]], int],
        progress: RunProgress,
    ) -> int:
        """
        Write rows chunk by chunk, counting progress after each chunk.

        Each chunk boundary is a cancellation point.
        """
        total = 0
        for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
            written = write(rows[start:start + UPSERT_CHUNK_SIZE])
            total += written
            progress.facts_upserted += written
            metrics.sync_rows_upserted_total.labels(report_type=self.report_type_name).inc(written)
            await asyncio.sleep(0)
        return total


async def map_with_concurrency(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Any]],
    concurrency: int = 3,
) -> List[Any]:
    """
    Run worker over items with at most ``concurrency`` in flight.

    Workers drain a shared queue. The first failure cancels the remaining
    workers and is re-raised.

    Returns:
        Results in item order
    """
    results: List[Any] = [None] * len(items)
    if not items:
        return results

    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    async def drain() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await worker(item)

    tasks = [asyncio.ensure_future(drain()) for _ in range(min(concurrency, len(items)))]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return results
