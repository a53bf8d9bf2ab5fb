"""FBA inventory syncs: the inventory report and the FBA Inventory API summaries."""

import asyncio
from typing import Any, Dict, List, Mapping, Optional
import structlog

from marketsync.backend import UPSERT_CHUNK_SIZE, Backend
from marketsync.config import settings
from marketsync.models import RunStatus
from marketsync.monitoring import metrics
from marketsync.parsing.delimited import ParsedTable, parse_int, parse_table
from marketsync.reports.document import DocumentFetcher
from marketsync.reports.job import ReportType
from marketsync.reports.poller import ReportPoller
from marketsync.spapi.client import SPAPIClient
from marketsync.sync.base import ReportSyncOrchestrator, RunProgress, SyncResult, utcnow

logger = structlog.get_logger(__name__)

INVENTORY_REPORT_TYPES = (
    ReportType.FBA_MYI_UNSUPPRESSED_INVENTORY,
    ReportType.FBA_MYI_ALL_INVENTORY,
    ReportType.AFN_INVENTORY,
)


def _sku_column(table: ParsedTable) -> Optional[int]:
    if table.has_field("sku"):
        return table.columns["sku"]
    # Some exports label the SKU column oddly; the first named column holds it
    for index, header in enumerate(table.headers):
        if header:
            return index
    return None


class InventoryReportSync(ReportSyncOrchestrator):
    """Stages inventory snapshot rows through erp_inventory_external_rows_upsert."""

    report_type = ReportType.FBA_MYI_UNSUPPRESSED_INVENTORY
    fact_table = "inventory_external_rows"

    def __init__(
        self,
        client: SPAPIClient,
        backend: Backend,
        company_id: str,
        marketplace_id: Optional[str] = None,
        poller: Optional[ReportPoller] = None,
        fetcher: Optional[DocumentFetcher] = None,
        report_type: Optional[ReportType] = None,
    ):
        super().__init__(client, backend, company_id, marketplace_id, poller, fetcher)
        if report_type is not None:
            report_type = ReportType(report_type)
            if report_type not in INVENTORY_REPORT_TYPES:
                raise ValueError(f"Unsupported inventory reportType: {report_type.value}")
            self.report_type = report_type

    def build_rows(self, text: str, run_id: str, progress: RunProgress) -> List[Dict[str, Any]]:
        """
        Turn report text into inventory rows.

        Inbound is the sum of working, shipped and receiving quantities,
        falling back to the report's own inbound column when that sum is 0.
        Rows without a SKU are skipped.
        """
        table = parse_table(text, "inventory")
        progress.row_count = table.row_count
        sku_index = _sku_column(table)

        rows = []
        for raw, record in zip(table.raw_rows, table.rows):
            sku_cell = raw[sku_index] if sku_index is not None and sku_index < len(raw) else ""
            sku = sku_cell.strip().upper()
            if not sku:
                progress.skipped_rows += 1
                continue

            working = parse_int(record["inbound_working"]) or 0
            shipped = parse_int(record["inbound_shipped"]) or 0
            receiving = parse_int(record["inbound_receiving"]) or 0
            inbound = working + shipped + receiving
            if inbound == 0:
                inbound = parse_int(record["inbound"]) or 0

            rows.append({
                "company_id": self.company_id,
                "marketplace_id": self.marketplace_id,
                "sku": sku,
                "asin": record["asin"],
                "fnsku": record["fnsku"],
                "condition": record["condition"],
                "available": parse_int(record["available"]) or 0,
                "reserved": parse_int(record["reserved"]) or 0,
                "inbound_working": working,
                "inbound_shipped": shipped,
                "inbound_receiving": receiving,
                "inbound": inbound,
                "location": record["location"] or "",
                "report_type": self.report_type_name,
                "report_run_id": run_id,
            })
        return rows

    async def process(self, text: str, run_id: str, progress: RunProgress) -> Dict[str, Any]:
        rows = self.build_rows(text, run_id, progress)
        await self.upsert_in_chunks(
            rows,
            lambda chunk: self.backend.call_procedure("erp_inventory_external_rows_upsert", {
                "p_company_id": self.company_id,
                "p_rows": list(chunk),
                "p_run_id": run_id,
            }),
            progress,
        )
        logger.info("inventory_rows_staged", run_id=run_id, rows=len(rows), skipped=progress.skipped_rows)
        return {"skus": len({row["sku"] for row in rows})}


RESERVED_FALLBACK_FIELDS = (
    "pendingCustomerOrderQuantity",
    "pendingTransshipmentQuantity",
    "fcProcessingQuantity",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_reserved_quantity(value: Any) -> int:
    """
    Reserved units from an inventory summary's ``reservedQuantity``.

    A plain number is taken as is. An object uses totalReservedQuantity,
    else the sum of its pending and FC processing quantities.
    """
    if _is_number(value):
        return int(value)
    if isinstance(value, Mapping):
        total = value.get("totalReservedQuantity")
        if _is_number(total):
            return int(total)
        return int(sum(value[k] for k in RESERVED_FALLBACK_FIELDS if _is_number(value.get(k))))
    return 0


def _quantity(details: Mapping[str, Any], key: str) -> int:
    value = details.get(key)
    return int(value) if _is_number(value) else 0


class InventorySummariesSync:
    """
    Stages FBA Inventory API summaries through erp_inventory_external_rows_upsert.

    Summaries are pulled for the whole marketplace, so the run has no window.
    """

    report_type_name = "FBA_INVENTORY_API"

    def __init__(
        self,
        client: SPAPIClient,
        backend: Backend,
        company_id: str,
        marketplace_id: Optional[str] = None,
    ):
        self.client = client
        self.backend = backend
        self.company_id = company_id
        self.marketplace_id = marketplace_id or settings.default_marketplace_id

    def build_rows(
        self, summaries: List[Mapping[str, Any]], run_id: str, progress: RunProgress
    ) -> List[Dict[str, Any]]:
        """Summaries without a seller SKU are skipped."""
        progress.row_count = len(summaries)

        rows = []
        for summary in summaries:
            seller_sku = summary.get("sellerSku")
            sku = seller_sku.strip().upper() if isinstance(seller_sku, str) else ""
            if not sku:
                progress.skipped_rows += 1
                continue

            details = summary.get("inventoryDetails") or {}
            working = _quantity(details, "inboundWorkingQuantity")
            shipped = _quantity(details, "inboundShippedQuantity")
            receiving = _quantity(details, "inboundReceivingQuantity")
            rows.append({
                "company_id": self.company_id,
                "marketplace_id": self.marketplace_id,
                "sku": sku,
                "asin": summary.get("asin"),
                "fnsku": summary.get("fnSku"),
                "condition": summary.get("condition"),
                "available": _quantity(details, "fulfillableQuantity"),
                "reserved": normalize_reserved_quantity(details.get("reservedQuantity")),
                "inbound_working": working,
                "inbound_shipped": shipped,
                "inbound_receiving": receiving,
                "inbound": working + shipped + receiving,
                "location": "",
                "report_type": self.report_type_name,
                "report_run_id": run_id,
            })
        return rows

    async def run(self) -> SyncResult:
        """
        Pull every summary and stage it.

        Raises:
            MarketSyncError: After the run is marked failed
            asyncio.CancelledError: After the run is marked failed
        """
        run_id = self.backend.create_run(
            company_id=self.company_id,
            channel="amazon",
            marketplace_id=self.marketplace_id,
            report_type=self.report_type_name,
            status=RunStatus.PROCESSING,
            started_at=utcnow(),
        )
        progress = RunProgress()
        log = logger.bind(run_id=run_id, company_id=self.company_id, marketplace_id=self.marketplace_id)

        metrics.active_sync_runs.inc()
        try:
            summaries = await self.client.list_inventory_summaries(self.marketplace_id)
            rows = self.build_rows(summaries, run_id, progress)

            for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
                written = self.backend.call_procedure("erp_inventory_external_rows_upsert", {
                    "p_company_id": self.company_id,
                    "p_rows": rows[start:start + UPSERT_CHUNK_SIZE],
                    "p_run_id": run_id,
                })
                progress.facts_upserted += written
                metrics.sync_rows_upserted_total.labels(report_type=self.report_type_name).inc(written)
                await asyncio.sleep(0)

            self.backend.update_run(
                run_id,
                status=RunStatus.COMPLETED,
                completed_at=utcnow(),
                row_count=progress.row_count,
                facts_upserted=progress.facts_upserted,
                skipped_rows=progress.skipped_rows,
            )
            metrics.sync_runs_total.labels(report_type=self.report_type_name, status="completed").inc()
            log.info("inventory_summaries_staged", rows=len(rows), skipped=progress.skipped_rows)
            return SyncResult(
                run_id=run_id,
                status=RunStatus.COMPLETED,
                report_type=self.report_type_name,
                row_count=progress.row_count,
                facts_upserted=progress.facts_upserted,
                skipped_rows=progress.skipped_rows,
                details={"skus": len({row["sku"] for row in rows})},
            )

        except asyncio.CancelledError:
            self._mark_failed(run_id, progress, "Sync cancelled.")
            log.warning("inventory_summaries_cancelled", rows=progress.facts_upserted)
            raise
        except Exception as e:
            self._mark_failed(run_id, progress, str(e))
            log.error("inventory_summaries_failed", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            metrics.active_sync_runs.dec()

    def _mark_failed(self, run_id: str, progress: RunProgress, message: str) -> None:
        self.backend.update_run(
            run_id,
            status=RunStatus.FAILED,
            completed_at=utcnow(),
            row_count=progress.row_count,
            facts_upserted=progress.facts_upserted,
            skipped_rows=progress.skipped_rows,
            error_message=message,
        )
        metrics.sync_runs_total.labels(report_type=self.report_type_name, status="failed").inc()
