"""Returns report sync for merchant-fulfilled (MFN) and FBA returns."""

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Optional
import structlog

from marketsync.backend import Backend
from marketsync.parsing.delimited import parse_amount, parse_date, parse_int, parse_table
from marketsync.reports.document import DocumentFetcher
from marketsync.reports.job import ReportType
from marketsync.reports.poller import ReportPoller
from marketsync.spapi.client import SPAPIClient
from marketsync.sync.base import ReportSyncOrchestrator, RunProgress, SyncResult

logger = structlog.get_logger(__name__)

RETURN_SOURCES = {
    "mfn": ReportType.MFN_RETURNS_BY_RETURN_DATE,
    "fba": ReportType.FBA_CUSTOMER_RETURNS,
}
RETURN_MODES = ("all", "mfn", "fba")
RETURN_FACT_KEYS = ["company_id", "return_key"]


def return_key(
    company_id: str,
    source: str,
    order_id: Optional[str],
    rma_id: Optional[str],
    asin: Optional[str],
    sku: Optional[str],
    return_date: Optional[datetime],
    quantity: Optional[int],
) -> str:
    """MD5 identity of a return line; absent parts hash as empty strings."""
    parts = [
        company_id,
        source,
        order_id or "",
        rma_id or "",
        asin or "",
        sku or "",
        return_date.isoformat() if return_date else "",
        "" if quantity is None else str(quantity),
    ]
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()


class ReturnsReportSync(ReportSyncOrchestrator):
    """Loads return facts from one returns report source."""

    fact_table = "amazon_returns"

    def __init__(
        self,
        client: SPAPIClient,
        backend: Backend,
        company_id: str,
        source: str = "mfn",
        marketplace_id: Optional[str] = None,
        poller: Optional[ReportPoller] = None,
        fetcher: Optional[DocumentFetcher] = None,
    ):
        if source not in RETURN_SOURCES:
            raise ValueError(f"Unknown returns source: {source}")
        super().__init__(client, backend, company_id, marketplace_id, poller, fetcher)
        self.source = source
        self.report_type = RETURN_SOURCES[source]

    def build_facts(self, text: str, run_id: str, progress: RunProgress) -> List[Dict[str, Any]]:
        """Rows with no order id, SKU, ASIN or return date at all are skipped."""
        table = parse_table(text, "returns")
        progress.row_count = table.row_count

        facts = []
        for record in table.rows:
            order_id = record["order_id"]
            sku = record["sku"].strip().upper() if record["sku"] else None
            asin = record["asin"]
            returned_at = parse_date(record["return_date"])
            if not (order_id or sku or asin or returned_at):
                progress.skipped_rows += 1
                continue

            quantity = parse_int(record["quantity"])
            facts.append({
                "company_id": self.company_id,
                "marketplace_id": self.marketplace_id,
                "source": self.source,
                "return_key": return_key(
                    self.company_id, self.source, order_id, record["rma_id"], asin, sku, returned_at, quantity
                ),
                "amazon_order_id": order_id,
                "rma_id": record["rma_id"],
                "sku": sku,
                "asin": asin,
                "return_date": returned_at,
                "quantity": quantity,
                "reason": record["reason"],
                "status": record["status"],
                "disposition": record["disposition"],
                "amount": parse_amount(record["amount"]),
                "currency": record["currency"],
                "report_run_id": run_id,
            })
        return facts

    async def process(self, text: str, run_id: str, progress: RunProgress) -> Dict[str, Any]:
        facts = self.build_facts(text, run_id, progress)
        await self.upsert_in_chunks(
            facts,
            lambda chunk: self.backend.upsert_facts(self.fact_table, chunk, RETURN_FACT_KEYS, run_id=run_id),
            progress,
        )
        return {"source": self.source}


async def run_returns_sync(
    client: SPAPIClient,
    backend: Backend,
    company_id: str,
    mode: str = "all",
    marketplace_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[SyncResult]:
    """
    Run the returns syncs selected by mode.

    In ``all`` mode the MFN report runs first, then FBA. The first failure
    stops the sequence; runs already completed keep their facts.

    Raises:
        ValueError: If mode is not all, mfn or fba
    """
    if mode not in RETURN_MODES:
        raise ValueError(f"Invalid mode: {mode}. Use all, mfn or fba.")

    sources = list(RETURN_SOURCES) if mode == "all" else [mode]
    logger.info("returns_sync_started", company_id=company_id, mode=mode)

    results = []
    for source in sources:
        sync = ReturnsReportSync(client, backend, company_id, source=source, marketplace_id=marketplace_id)
        results.append(await sync.run(start, end))
    return results
