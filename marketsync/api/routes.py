"""API routes for the service."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import NoReturn, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query
import structlog

from marketsync.api.schemas import (
    CashflowResponse,
    HealthResponse,
    RunStatusResponse,
    SettlementListResponse,
    SettlementNormalizeResponse,
    SettlementPreviewResponse,
    SyncRequest,
    SyncResponse,
    SyncResultResponse,
)
from marketsync.backend import Backend, get_backend
from marketsync.config import settings
from marketsync.errors import (
    ConfigurationFault,
    DocumentFetchError,
    MarketSyncError,
    ParseError,
    PollTimeout,
    RemoteAuthError,
    RemoteRateLimitError,
    RemoteRequestError,
    ReportFailed,
)
from marketsync.spapi.client import SPAPIClient
from marketsync.sync.base import SyncResult
from marketsync.sync.cashflow import CashflowSync
from marketsync.sync.registry import SyncKind, create_client, resolve_report_type, run_sync, sync_registry
from marketsync.sync.settlements import SettlementNormalizeSync, SettlementReports
from marketsync.worker.tasks import run_orders_sync, run_report_sync
from marketsync import __version__

logger = structlog.get_logger(__name__)

router = APIRouter()

ALLOWED_ROLES = {"owner", "admin", "inventory", "finance"}


@dataclass
class Caller:
    company_id: str
    role: str


def get_caller(
    x_company_id: Optional[str] = Header(None),
    x_role: Optional[str] = Header(None),
) -> Caller:
    """Resolve the calling company and check its role."""
    if not x_company_id:
        raise HTTPException(status_code=401, detail="Missing X-Company-Id header")
    role = (x_role or "").strip().lower()
    if role not in ALLOWED_ROLES:
        raise HTTPException(status_code=403, detail="Not authorized")
    return Caller(company_id=x_company_id, role=role)


def get_spapi_client() -> SPAPIClient:
    """SP-API client on process credentials; 500 when they are incomplete."""
    try:
        return create_client()
    except ConfigurationFault as e:
        logger.error("spapi_not_configured", missing=e.missing)
        raise HTTPException(status_code=500, detail=str(e))


def raise_http_error(e: Exception) -> NoReturn:
    """Translate a pipeline error into an HTTP error."""
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, RemoteRateLimitError):
        headers = {"Retry-After": str(e.retry_after)} if e.retry_after else None
        raise HTTPException(status_code=429, detail=str(e), headers=headers)
    if isinstance(e, RemoteAuthError):
        raise HTTPException(status_code=502, detail=f"Amazon rejected our credentials: {e}")
    if isinstance(e, RemoteRequestError):
        raise HTTPException(status_code=502, detail=str(e))
    if isinstance(e, PollTimeout):
        raise HTTPException(status_code=504, detail=str(e))
    if isinstance(e, (ReportFailed, DocumentFetchError, ParseError)):
        raise HTTPException(status_code=502, detail=str(e))
    if isinstance(e, MarketSyncError):
        raise HTTPException(status_code=500, detail=str(e))
    raise e


def _result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        run_id=result.run_id,
        status=result.status.value,
        report_type=result.report_type,
        report_id=result.report_id,
        row_count=result.row_count,
        facts_upserted=result.facts_upserted,
        skipped_rows=result.skipped_rows,
        error=result.error,
        details=result.details,
    )


# Health check
@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
    )


# Sync routes
@router.post("/sync/{report_kind}", response_model=SyncResponse)
async def submit_sync(
    report_kind: str,
    request: SyncRequest,
    caller: Caller = Depends(get_caller),
    backend: Backend = Depends(get_backend),
):
    """
    Run a sync for a window, inline or on the worker.

    Args:
        report_kind: Sync kind (orders, orders_api, inventory, returns, ...)
        request: Window and marketplace
        caller: Calling company
        backend: Persistence backend

    Returns:
        Run results, or the queued task id
    """
    if not sync_registry.is_supported(report_kind):
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported report kind: {report_kind}. Use one of: {', '.join(sync_registry.list_kinds())}",
        )
    try:
        resolve_report_type(report_kind, request.report_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("sync_requested", kind=report_kind, company_id=caller.company_id, enqueue=request.enqueue)

    if request.enqueue:
        if report_kind.lower() == SyncKind.ORDERS_API.value:
            task = run_orders_sync.delay(caller.company_id, request.marketplace_id)
        else:
            task = run_report_sync.delay(
                report_kind,
                caller.company_id,
                request.marketplace_id,
                request.start.isoformat() if request.start else None,
                request.end.isoformat() if request.end else None,
                request.report_type,
            )
        return SyncResponse(kind=report_kind, queued=True, task_id=task.id)

    client = get_spapi_client()
    try:
        results = await run_sync(
            report_kind,
            backend,
            caller.company_id,
            request.marketplace_id,
            request.start,
            request.end,
            client=client,
            report_type=request.report_type,
        )
    except Exception as e:
        logger.error("sync_request_failed", kind=report_kind, error=str(e))
        raise_http_error(e)

    return SyncResponse(kind=report_kind, queued=False, results=[_result_response(r) for r in results])


@router.get("/runs/{run_id}", response_model=RunStatusResponse)
async def get_run_status(
    run_id: str,
    caller: Caller = Depends(get_caller),
    backend: Backend = Depends(get_backend),
):
    """
    Get a run record.

    Args:
        run_id: Run ID
        caller: Calling company; other companies' runs are not visible

    Returns:
        Run status
    """
    run = backend.get_run(run_id)
    if not run or run["company_id"] != caller.company_id:
        raise HTTPException(status_code=404, detail="Run not found")

    return RunStatusResponse(
        run_id=run["id"],
        status=run["status"],
        report_type=run["report_type"],
        marketplace_id=run["marketplace_id"],
        report_id=run["report_id"],
        report_document_id=run["report_document_id"],
        remote_status=run["remote_status"],
        row_count=run["row_count"],
        facts_upserted=run["facts_upserted"],
        skipped_rows=run["skipped_rows"],
        requested_at=run["requested_at"],
        started_at=run["started_at"],
        completed_at=run["completed_at"],
        error_message=run["error_message"],
    )


# Settlement routes
@router.get("/settlements", response_model=SettlementListResponse)
async def list_settlements(
    next_token: Optional[str] = Query(None, description="Continuation token from the previous page"),
    caller: Caller = Depends(get_caller),
    client: SPAPIClient = Depends(get_spapi_client),
):
    """List settlement reports, one page at a time."""
    try:
        reports, token = await SettlementReports(client).list_reports(next_token)
    except Exception as e:
        logger.error("settlement_list_failed", company_id=caller.company_id, error=str(e))
        raise_http_error(e)

    return SettlementListResponse(reports=reports, next_token=token)


@router.get("/settlements/{report_id}/preview", response_model=SettlementPreviewResponse)
async def preview_settlement_report(
    report_id: str,
    max_rows: int = Query(settings.settlement_preview_rows, ge=1, le=settings.settlement_preview_rows),
    caller: Caller = Depends(get_caller),
    client: SPAPIClient = Depends(get_spapi_client),
):
    """
    Preview a settlement report.

    Args:
        report_id: Settlement report ID
        max_rows: Row cap

    Returns:
        Raw header lines, columns, capped rows and per-currency totals
    """
    try:
        preview = await SettlementReports(client).preview(report_id, max_rows)
    except Exception as e:
        logger.error("settlement_preview_failed", report_id=report_id, error=str(e))
        raise_http_error(e)

    return SettlementPreviewResponse(report_id=report_id, **preview.to_dict())


@router.post("/settlements/{report_id}/normalize", response_model=SettlementNormalizeResponse)
async def normalize_settlement_report(
    report_id: str,
    caller: Caller = Depends(get_caller),
    backend: Backend = Depends(get_backend),
    client: SPAPIClient = Depends(get_spapi_client),
):
    """Normalize a settlement report and stage it as a settlement batch."""
    sync = SettlementNormalizeSync(client, backend, caller.company_id, report_id)
    try:
        result = await sync.run()
    except Exception as e:
        logger.error("settlement_normalize_failed", report_id=report_id, error=str(e))
        raise_http_error(e)

    return SettlementNormalizeResponse(run_id=result.run_id, report_id=report_id, **result.details)


# Cashflow
@router.get("/cashflow", response_model=CashflowResponse)
async def get_cashflow(
    start: str = Query(..., description="First day, YYYY-MM-DD"),
    end: str = Query(..., description="Last day, YYYY-MM-DD"),
    caller: Caller = Depends(get_caller),
    backend: Backend = Depends(get_backend),
    client: SPAPIClient = Depends(get_spapi_client),
):
    """
    Summarize Amazon cashflow for a window of at most 60 days.

    Returns:
        Totals per currency, breakdowns per bucket and warnings
    """
    try:
        summary = await CashflowSync(client, backend, caller.company_id).run(start, end)
    except Exception as e:
        logger.error("cashflow_failed", company_id=caller.company_id, error=str(e))
        raise_http_error(e)

    return CashflowResponse(start=start, end=end, **summary.to_dict())
