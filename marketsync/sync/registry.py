"""Sync kind registry for dispatching jobs from the API and the worker."""

from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog

from marketsync.backend import Backend
from marketsync.config import load_credentials, settings
from marketsync.reports.job import ReportType
from marketsync.spapi.client import SPAPIClient
from marketsync.sync.base import SyncResult
from marketsync.sync.inventory import INVENTORY_REPORT_TYPES, InventoryReportSync, InventorySummariesSync
from marketsync.sync.orders import OrdersApiSync, OrdersReportSync
from marketsync.sync.returns import run_returns_sync

logger = structlog.get_logger(__name__)

SyncRunner = Callable[..., Awaitable[List[SyncResult]]]


class SyncKind(str, Enum):
    """Sync jobs that can be submitted for a window."""
    ORDERS = "orders"
    ORDERS_API = "orders_api"
    INVENTORY = "inventory"
    INVENTORY_API = "inventory_api"
    RETURNS = "returns"
    RETURNS_MFN = "returns_mfn"
    RETURNS_FBA = "returns_fba"


class SyncRegistry:
    """Maps sync kinds to their runners."""

    def __init__(self):
        self._runners: Dict[str, SyncRunner] = {}

    def register(self, kind: str, runner: SyncRunner) -> None:
        self._runners[kind.lower()] = runner

    def get(self, kind: str) -> SyncRunner:
        """
        Get the runner for a sync kind.

        Raises:
            ValueError: If the kind is not registered
        """
        kind_lower = kind.lower()
        if kind_lower not in self._runners:
            raise ValueError(
                f"Unsupported sync kind: {kind}. "
                f"Available kinds: {', '.join(self._runners.keys())}"
            )
        return self._runners[kind_lower]

    def is_supported(self, kind: str) -> bool:
        return kind.lower() in self._runners

    def list_kinds(self) -> List[str]:
        return list(self._runners.keys())


async def _orders(client, backend, company_id, marketplace_id, start, end, report_type=None):
    return [await OrdersReportSync(client, backend, company_id, marketplace_id).run(start, end)]


async def _orders_api(client, backend, company_id, marketplace_id, start, end, report_type=None):
    # Driven by the stored watermark, not the window
    return [await OrdersApiSync(client, backend, company_id, marketplace_id).run()]


async def _inventory(client, backend, company_id, marketplace_id, start, end, report_type=None):
    sync = InventoryReportSync(client, backend, company_id, marketplace_id, report_type=report_type)
    return [await sync.run(start, end)]


async def _inventory_api(client, backend, company_id, marketplace_id, start, end, report_type=None):
    # A point-in-time snapshot, not a window
    return [await InventorySummariesSync(client, backend, company_id, marketplace_id).run()]


def _returns(mode: str) -> SyncRunner:
    async def runner(client, backend, company_id, marketplace_id, start, end, report_type=None):
        return await run_returns_sync(client, backend, company_id, mode, marketplace_id, start, end)
    return runner


# Report types each kind may be switched to per request
REPORT_TYPE_OVERRIDES = {SyncKind.INVENTORY.value: INVENTORY_REPORT_TYPES}

sync_registry = SyncRegistry()
sync_registry.register(SyncKind.ORDERS.value, _orders)
sync_registry.register(SyncKind.ORDERS_API.value, _orders_api)
sync_registry.register(SyncKind.INVENTORY.value, _inventory)
sync_registry.register(SyncKind.INVENTORY_API.value, _inventory_api)
sync_registry.register(SyncKind.RETURNS.value, _returns("all"))
sync_registry.register(SyncKind.RETURNS_MFN.value, _returns("mfn"))
sync_registry.register(SyncKind.RETURNS_FBA.value, _returns("fba"))


def resolve_report_type(kind: str, report_type: Optional[str]) -> Optional[ReportType]:
    """
    Validate a per-request report type override.

    Raises:
        ValueError: If the type is unknown or the kind takes no override
    """
    if not report_type:
        return None
    resolved = ReportType.parse(report_type)
    allowed = REPORT_TYPE_OVERRIDES.get(kind.lower(), ())
    if resolved not in allowed:
        raise ValueError(f"reportType {resolved.value} cannot be used for {kind} syncs")
    return resolved


def create_client(overrides: Optional[Dict[str, Any]] = None) -> SPAPIClient:
    """SP-API client on the process credentials."""
    return SPAPIClient(load_credentials(overrides=overrides), timeout=settings.spapi_request_timeout_seconds)


async def run_sync(
    kind: str,
    backend: Backend,
    company_id: str,
    marketplace_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    client: Optional[SPAPIClient] = None,
    report_type: Optional[str] = None,
) -> List[SyncResult]:
    """
    Run one sync kind to completion.

    Raises:
        ValueError: If the kind or report type is unsupported
        ConfigurationFault: If no client is given and credentials are incomplete
        MarketSyncError: If the sync fails
    """
    runner = sync_registry.get(kind)
    resolved = resolve_report_type(kind, report_type)
    client = client or create_client()
    logger.info("sync_dispatched", kind=kind, company_id=company_id, marketplace_id=marketplace_id)
    return await runner(client, backend, company_id, marketplace_id, start, end, report_type=resolved)
