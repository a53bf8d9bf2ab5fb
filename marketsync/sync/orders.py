"""Order syncs: the all-orders flat file report and the incremental Orders API."""

import asyncio
import hashlib
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional
import structlog

from marketsync.backend import Backend
from marketsync.config import settings
from marketsync.errors import ParseError
from marketsync.models import RunStatus
from marketsync.monitoring import metrics
from marketsync.parsing.delimited import parse_amount, parse_date, parse_int, parse_table
from marketsync.reports.job import ReportType
from marketsync.spapi.client import SPAPIClient, to_iso8601
from marketsync.sync.base import (
    ReportSyncOrchestrator,
    RunProgress,
    SyncResult,
    map_with_concurrency,
    utcnow,
)

logger = structlog.get_logger(__name__)

ORDER_FACT_KEYS = ["company_id", "marketplace_id", "amazon_order_id", "order_item_id"]

ORDERS_SOURCE_KEY = "amazon_orders"
DEFAULT_LOOKBACK_DAYS = 7
WATERMARK_OVERLAP = timedelta(minutes=5)


def order_item_key(order_id: str, sku: Optional[str], asin: Optional[str], index: int) -> str:
    """Stand-in order item id for rows that carry none."""
    return hashlib.sha256(f"{order_id}|{sku or ''}|{asin or ''}|{index}".encode("utf-8")).hexdigest()


class OrdersReportSync(ReportSyncOrchestrator):
    """Loads order line facts from the all-orders-by-order-date report."""

    report_type = ReportType.ALL_ORDERS_BY_ORDER_DATE
    fact_table = "amazon_order_facts"

    def build_facts(self, text: str, run_id: str, progress: RunProgress) -> List[Dict[str, Any]]:
        """
        Turn report text into order line facts.

        Rows without an order id or a parseable purchase date are skipped.

        Raises:
            ParseError: If the report has rows but no order id column
        """
        table = parse_table(text, "orders")
        progress.row_count = table.row_count
        if table.row_count and not table.has_field("order_id"):
            raise ParseError("Missing order-id column in report header.")

        facts = []
        for index, row in enumerate(table.rows):
            order_id = row["order_id"]
            purchase_date = parse_date(row["purchase_date"])
            if not order_id or purchase_date is None:
                progress.skipped_rows += 1
                continue

            facts.append({
                "company_id": self.company_id,
                "marketplace_id": self.marketplace_id,
                "amazon_order_id": order_id,
                "order_item_id": row["order_item_id"] or order_item_key(order_id, row["sku"], row["asin"], index),
                "purchase_date": purchase_date,
                "order_status": row["order_status"],
                "fulfillment_channel": row["fulfillment_channel"],
                "sales_channel": row["sales_channel"],
                "buyer_email": row["buyer_email"],
                "buyer_name": row["buyer_name"],
                "ship_state": row["ship_state"],
                "ship_city": row["ship_city"],
                "ship_postal_code": row["ship_postal_code"],
                "external_sku": row["sku"],
                "asin": row["asin"],
                "fnsku": row["fnsku"],
                "quantity": parse_int(row["quantity"]),
                "item_amount": parse_amount(row["item_amount"]),
                "item_tax": parse_amount(row["item_tax"]),
                "shipping_amount": parse_amount(row["shipping_amount"]),
                "shipping_tax": parse_amount(row["shipping_tax"]),
                "gift_wrap_amount": parse_amount(row["gift_wrap_amount"]),
                "promo_discount": parse_amount(row["promo_discount"]),
                "currency": row["currency"],
                "report_run_id": run_id,
            })
        return facts

    async def process(self, text: str, run_id: str, progress: RunProgress) -> Dict[str, Any]:
        facts = self.build_facts(text, run_id, progress)
        await self.upsert_in_chunks(
            facts,
            lambda chunk: self.backend.upsert_facts(self.fact_table, chunk, ORDER_FACT_KEYS, run_id=run_id),
            progress,
        )
        return {}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class OrdersApiSync:
    """
    Incremental order sync through the Orders API.

    Orders updated since the stored watermark are upserted, then each
    order's items are replaced through a bounded worker pool.
    """

    report_type_name = "ORDERS_API"

    def __init__(
        self,
        client: SPAPIClient,
        backend: Backend,
        company_id: str,
        marketplace_id: Optional[str] = None,
        concurrency: Optional[int] = None,
    ):
        self.client = client
        self.backend = backend
        self.company_id = company_id
        self.marketplace_id = marketplace_id or settings.default_marketplace_id
        self.concurrency = concurrency or settings.order_items_concurrency

    def _last_updated_after(self) -> datetime:
        state = self.backend.get_sync_state(self.company_id, ORDERS_SOURCE_KEY, self.marketplace_id)
        if state and state.get("watermark"):
            return state["watermark"]
        return utcnow() - timedelta(days=DEFAULT_LOOKBACK_DAYS)

    async def run(self) -> SyncResult:
        """
        Sync orders and their items.

        Returns:
            SyncResult with orders_upserted, items_written and next_watermark

        Raises:
            MarketSyncError: After the failure is recorded in the run and sync state
        """
        last_updated_after = self._last_updated_after()
        run_id = self.backend.create_run(
            company_id=self.company_id,
            channel="amazon",
            marketplace_id=self.marketplace_id,
            report_type=self.report_type_name,
            status=RunStatus.PROCESSING,
            data_start_time=last_updated_after,
            started_at=utcnow(),
        )
        counts = {"orders": 0, "items": 0}
        latest: List[datetime] = []
        log = logger.bind(run_id=run_id, company_id=self.company_id, marketplace_id=self.marketplace_id)

        async def process_order(order: Mapping[str, Any]) -> None:
            order_id = order.get("AmazonOrderId")
            if not isinstance(order_id, str) or not order_id:
                return

            self.backend.call_procedure("erp_amazon_orders_upsert", {
                "p_company_id": self.company_id,
                "p_marketplace_id": self.marketplace_id,
                "p_order": order,
            })
            counts["orders"] += 1

            items = await self.client.list_order_items(order_id)
            written = self.backend.call_procedure("erp_amazon_order_items_replace", {
                "p_company_id": self.company_id,
                "p_marketplace_id": self.marketplace_id,
                "p_amazon_order_id": order_id,
                "p_items": items,
            })
            if isinstance(written, int):
                counts["items"] += written

            updated = _parse_timestamp(order.get("LastUpdateDate"))
            if updated is not None:
                latest.append(updated)

        metrics.active_sync_runs.inc()
        try:
            orders = [
                order async for order in self.client.iter_orders(self.marketplace_id, to_iso8601(last_updated_after))
            ]
            log.info("orders_listed", count=len(orders), since=to_iso8601(last_updated_after))

            await map_with_concurrency(orders, process_order, self.concurrency)

            next_watermark = max(latest) - WATERMARK_OVERLAP if latest else last_updated_after
            self.backend.save_sync_state(
                self.company_id, ORDERS_SOURCE_KEY, self.marketplace_id, watermark=next_watermark
            )
            self.backend.update_run(
                run_id,
                status=RunStatus.COMPLETED,
                completed_at=utcnow(),
                row_count=len(orders),
                facts_upserted=counts["orders"] + counts["items"],
            )
            metrics.sync_runs_total.labels(report_type=self.report_type_name, status="completed").inc()
            metrics.sync_rows_upserted_total.labels(report_type=self.report_type_name).inc(
                counts["orders"] + counts["items"]
            )
            log.info(
                "orders_sync_completed",
                orders_upserted=counts["orders"],
                items_written=counts["items"],
                next_watermark=to_iso8601(next_watermark),
            )
            return SyncResult(
                run_id=run_id,
                status=RunStatus.COMPLETED,
                report_type=self.report_type_name,
                row_count=len(orders),
                facts_upserted=counts["orders"] + counts["items"],
                details={
                    "orders_upserted": counts["orders"],
                    "items_written": counts["items"],
                    "next_watermark": to_iso8601(next_watermark),
                },
            )

        except asyncio.CancelledError:
            self._mark_failed(run_id, counts, "Sync cancelled.")
            log.warning("orders_sync_cancelled", orders_upserted=counts["orders"])
            raise
        except Exception as e:
            self._mark_failed(run_id, counts, str(e))
            log.error("orders_sync_failed", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            metrics.active_sync_runs.dec()

    def _mark_failed(self, run_id: str, counts: Mapping[str, int], message: str) -> None:
        self.backend.save_sync_state(self.company_id, ORDERS_SOURCE_KEY, self.marketplace_id, error=message)
        self.backend.update_run(
            run_id,
            status=RunStatus.FAILED,
            completed_at=utcnow(),
            facts_upserted=counts["orders"] + counts["items"],
            error_message=message,
        )
        metrics.sync_runs_total.labels(report_type=self.report_type_name, status="failed").inc()
