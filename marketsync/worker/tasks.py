"""Celery tasks wrapping the async sync orchestrators."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional
import structlog

from marketsync.backend import get_backend
from marketsync.sync.orders import OrdersApiSync
from marketsync.sync.registry import create_client, run_sync
from marketsync.worker.celery_app import celery_app

logger = structlog.get_logger(__name__)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@celery_app.task(bind=True, name="run_report_sync")
def run_report_sync(
    self,
    report_kind: str,
    company_id: str,
    marketplace_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    report_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Celery task to run one sync kind for a window.

    Args:
        report_kind: Sync kind (orders, inventory, returns, ...)
        company_id: Tenant
        marketplace_id: Marketplace ID
        start: Window start, ISO-8601
        end: Window end, ISO-8601
        report_type: Optional report type override (inventory)

    Returns:
        One result dict per orchestrator run
    """
    logger.info("report_sync_task_started", task_id=self.request.id, kind=report_kind, company_id=company_id)
    try:
        results = asyncio.run(run_sync(
            report_kind,
            get_backend(),
            company_id,
            marketplace_id,
            _parse_datetime(start),
            _parse_datetime(end),
            report_type=report_type,
        ))
    except Exception as e:
        logger.error("task_failed", task_id=self.request.id, kind=report_kind, error=str(e))
        raise
    return [result.to_dict() for result in results]


@celery_app.task(bind=True, name="run_orders_sync")
def run_orders_sync(self, company_id: str, marketplace_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Celery task for the incremental Orders API sync.

    Args:
        company_id: Tenant
        marketplace_id: Marketplace ID
    """
    logger.info("orders_sync_task_started", task_id=self.request.id, company_id=company_id)
    sync = OrdersApiSync(create_client(), get_backend(), company_id, marketplace_id)
    try:
        result = asyncio.run(sync.run())
    except Exception as e:
        logger.error("task_failed", task_id=self.request.id, kind="orders_api", error=str(e))
        raise
    return result.to_dict()
