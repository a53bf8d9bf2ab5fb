"""Report lifecycle poller."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional
import structlog

from marketsync.config import Settings, settings
from marketsync.errors import PollTimeout, ReportFailed
from marketsync.monitoring import metrics
from marketsync.reports.job import ReportJob, ReportStatus, normalize_remote_status
from marketsync.spapi.client import SPAPIClient

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Geometric backoff between status polls."""

    initial_delay: float = 2.5
    factor: float = 1.6
    max_delay: float = 20.0
    max_attempts: int = 12

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "BackoffPolicy":
        config = config or settings
        return cls(
            initial_delay=config.report_poll_initial_delay_seconds,
            factor=config.report_poll_backoff_factor,
            max_delay=config.report_poll_max_delay_seconds,
            max_attempts=config.report_poll_max_attempts,
        )

    def next_delay(self, delay: float) -> float:
        """Grow a delay by one step, rounded to milliseconds and capped."""
        return min(round(delay * self.factor * 1000) / 1000, self.max_delay)

    def delays(self) -> List[float]:
        """Every delay the poller may sleep, in order."""
        result = []
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            result.append(delay)
            delay = self.next_delay(delay)
        return result


class ReportPoller:
    """Submits report jobs and waits for them to reach a terminal status."""

    def __init__(
        self,
        client: SPAPIClient,
        policy: Optional[BackoffPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize poller.

        Args:
            client: SP-API client
            policy: Backoff policy (defaults from settings)
            sleep: Awaitable delay; cancelling it cancels the poll
        """
        self.client = client
        self.policy = policy or BackoffPolicy.from_settings()
        self.sleep = sleep

    async def submit(self, job: ReportJob) -> str:
        """
        Request the report and move the job to PROCESSING.

        Returns:
            Report ID
        """
        report_id, _, _ = await self.client.create_report(
            job.report_type,
            [job.marketplace_id],
            data_start_time=job.data_start_time,
            data_end_time=job.data_end_time,
        )
        job.report_id = report_id
        job.transition(ReportStatus.PROCESSING)
        return report_id

    async def poll(self, job: ReportJob) -> Optional[str]:
        """
        Poll a submitted job until it finishes.

        The status is checked once straight away; every further check
        follows one backoff sleep.

        Returns:
            Report document ID, or None when the report has no data

        Raises:
            ReportFailed: On FATAL, CANCELLED or ERROR
            PollTimeout: If the job is still processing after max attempts
        """
        if job.report_id is None:
            raise ValueError("Report job has not been submitted")

        report_type = job.report_type.value
        attempt = 0
        delay = self.policy.initial_delay

        while True:
            report = await self.client.get_report(job.report_id)
            metrics.report_poll_attempts_total.labels(report_type=report_type).inc()
            remote_status = report.processing_status or "UNKNOWN"
            status = normalize_remote_status(remote_status)

            logger.info(
                "report_status_polled",
                report_id=job.report_id,
                report_type=report_type,
                status=remote_status,
                attempt=attempt + 1,
            )

            if status == ReportStatus.DONE:
                job.document_id = report.report_document_id
                job.transition(status, remote_status)
                metrics.report_jobs_total.labels(report_type=report_type, status=status.value).inc()
                if not job.document_id:
                    raise ReportFailed(status.value, "Report completed without a reportDocumentId.")
                return job.document_id

            if status == ReportStatus.DONE_NO_DATA:
                job.transition(status, remote_status)
                metrics.report_jobs_total.labels(report_type=report_type, status=status.value).inc()
                return None

            if status.is_failure:
                job.transition(status, remote_status)
                metrics.report_jobs_total.labels(report_type=report_type, status=status.value).inc()
                logger.error("report_failed", report_id=job.report_id, status=remote_status)
                raise ReportFailed(status.value)

            job.remote_status = remote_status
            attempt += 1
            if attempt >= self.policy.max_attempts:
                # Bounded wait: the report may still finish remotely
                job.transition(ReportStatus.FATAL, remote_status)
                metrics.report_jobs_total.labels(report_type=report_type, status="TIMEOUT").inc()
                logger.error("report_poll_timeout", report_id=job.report_id, attempts=attempt)
                raise PollTimeout(attempt, remote_status)

            await self.sleep(delay)
            delay = self.policy.next_delay(delay)

    async def run(self, job: ReportJob) -> Optional[str]:
        """Submit then poll."""
        await self.submit(job)
        return await self.poll(job)
