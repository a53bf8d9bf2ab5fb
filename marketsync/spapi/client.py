"""Amazon Selling Partner API client."""

import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple
import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
import structlog

from marketsync.auth.lwa_client import LWAClient
from marketsync.config import Credentials
from marketsync.errors import (
    RemoteAuthError,
    RemoteRateLimitError,
    RemoteRequestError,
    RemoteServerError,
)
from marketsync.monitoring import metrics
from marketsync.reports.job import ReportType
from marketsync.spapi.signer import SigV4Signer

logger = structlog.get_logger(__name__)

REPORTS_API_VERSION = "2021-06-30"
ORDERS_MAX_RESULTS = 100


class ReportStatusResponse(BaseModel):
    """Report status from getReport."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    report_id: Optional[str] = Field(default=None, alias="reportId")
    report_type: Optional[str] = Field(default=None, alias="reportType")
    processing_status: Optional[str] = Field(default=None, alias="processingStatus")
    report_document_id: Optional[str] = Field(default=None, alias="reportDocumentId")
    data_start_time: Optional[str] = Field(default=None, alias="dataStartTime")
    data_end_time: Optional[str] = Field(default=None, alias="dataEndTime")
    created_time: Optional[str] = Field(default=None, alias="createdTime")
    marketplace_ids: Optional[List[str]] = Field(default=None, alias="marketplaceIds")


class ReportDocument(BaseModel):
    """Retrieval handle for a finished report."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    report_document_id: Optional[str] = Field(default=None, alias="reportDocumentId")
    url: str
    compression_algorithm: Optional[str] = Field(default=None, alias="compressionAlgorithm")


def extract_error_message(payload: Any, fallback: str) -> str:
    """Summarize the first entry of an SP-API ``errors`` envelope."""
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list) and errors:
        first = errors[0] if isinstance(errors[0], dict) else {}
        details = " - ".join(str(first[k]) for k in ("code", "message", "details") if first.get(k))
        if details:
            return f"{fallback}. {details}"
    return fallback


def to_iso8601(value: datetime) -> str:
    """UTC ISO-8601 with milliseconds, the format SP-API echoes back."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SPAPIClient:
    """Client for Amazon Selling Partner API."""

    def __init__(
        self,
        credentials: Credentials,
        token_provider: Optional[LWAClient] = None,
        signer: Optional[SigV4Signer] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize SP-API client.

        Args:
            credentials: Process credentials
            token_provider: LWA client (built from credentials if omitted)
            signer: SigV4 signer (built from credentials if omitted)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.credentials = credentials
        self.token_provider = token_provider or LWAClient(credentials, cache_tokens=True, transport=transport)
        self.signer = signer or SigV4Signer.from_credentials(credentials)
        self.timeout = timeout
        self.transport = transport

    async def _make_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Make signed SP-API request.

        Args:
            method: HTTP method
            path: API path
            params: Query parameters
            body: JSON body
            endpoint: Metric label for the call

        Returns:
            Response JSON

        Raises:
            RemoteRequestError: On non-success responses, transport failures or non-JSON bodies
        """
        access_token = await self.token_provider.get_access_token()

        data = json.dumps(body, separators=(",", ":")) if body is not None else None
        extra_headers = {"content-type": "application/json"} if data is not None else None
        signed = self.signer.sign(
            method=method,
            path=path,
            access_token=access_token,
            params=params,
            body=data,
            extra_headers=extra_headers,
        )

        label = endpoint or path
        logger.info("making_spapi_request", method=method, path=path, params=params)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method=signed.method,
                    url=signed.url,
                    headers=signed.headers,
                    content=signed.body,
                )
        except httpx.TransportError as e:
            metrics.spapi_errors_total.labels(error_type="transport").inc()
            logger.error("spapi_transport_error", method=method, path=path, error=str(e))
            raise RemoteRequestError(f"SP-API request failed on {method} {path}: {e}") from e

        metrics.spapi_requests_total.labels(endpoint=label, status_code=str(response.status_code)).inc()

        if response.is_success:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                metrics.spapi_errors_total.labels(error_type="invalid_response").inc()
                logger.error("spapi_invalid_json", status=response.status_code, response=response.text[:500])
                raise RemoteRequestError(
                    f"SP-API returned a non-JSON body on {method} {path}",
                    status_code=response.status_code,
                    body=response.text,
                ) from e

        body_text = response.text
        try:
            payload = response.json()
        except ValueError:
            payload = None
        message = extract_error_message(payload, f"SP-API error {response.status_code} on {method} {path}")

        if response.status_code in (401, 403):
            metrics.spapi_errors_total.labels(error_type="auth").inc()
            logger.error("spapi_auth_error", status=response.status_code, response=body_text)
            raise RemoteAuthError(message, status_code=response.status_code, body=body_text)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            retry_after_int = int(retry_after) if retry_after and retry_after.isdigit() else None
            metrics.spapi_errors_total.labels(error_type="rate_limit").inc()
            logger.warning("spapi_rate_limit", retry_after=retry_after)
            raise RemoteRateLimitError(message, retry_after=retry_after_int, body=body_text)

        if response.status_code >= 500:
            metrics.spapi_errors_total.labels(error_type="server").inc()
            logger.error("spapi_server_error", status=response.status_code, response=body_text)
            raise RemoteServerError(message, status_code=response.status_code, body=body_text)

        metrics.spapi_errors_total.labels(error_type="request").inc()
        logger.error("spapi_request_failed", status=response.status_code, response=body_text)
        raise RemoteRequestError(message, status_code=response.status_code, body=body_text)

    # Reports API

    async def create_report(
        self,
        report_type: ReportType,
        marketplace_ids: Sequence[str],
        data_start_time: Optional[datetime] = None,
        data_end_time: Optional[datetime] = None,
    ) -> Tuple[str, Dict[str, Any], Dict[str, Any]]:
        """
        Submit a report request.

        Returns:
            Tuple of (report_id, request body, raw response)
        """
        request: Dict[str, Any] = {
            "reportType": ReportType(report_type).value,
            "marketplaceIds": list(marketplace_ids),
        }
        if data_start_time:
            request["dataStartTime"] = to_iso8601(data_start_time)
        if data_end_time:
            request["dataEndTime"] = to_iso8601(data_end_time)

        response = await self._make_request(
            "POST",
            f"/reports/{REPORTS_API_VERSION}/reports",
            body=request,
            endpoint="createReport",
        )
        report_id = response.get("reportId")
        if not report_id:
            raise RemoteRequestError("createReport response is missing reportId", body=json.dumps(response))

        logger.info("report_requested", report_type=request["reportType"], report_id=report_id)
        return str(report_id), request, response

    async def get_report(self, report_id: str) -> ReportStatusResponse:
        response = await self._make_request(
            "GET",
            f"/reports/{REPORTS_API_VERSION}/reports/{report_id}",
            endpoint="getReport",
        )
        return ReportStatusResponse.model_validate(response)

    async def get_report_document(self, report_document_id: str) -> ReportDocument:
        """Resolve a report document id into its download URL."""
        response = await self._make_request(
            "GET",
            f"/reports/{REPORTS_API_VERSION}/documents/{report_document_id}",
            endpoint="getReportDocument",
        )
        try:
            return ReportDocument.model_validate(response)
        except ValidationError as e:
            raise RemoteRequestError("Unexpected report document response.", body=json.dumps(response)) from e

    async def list_reports(
        self,
        report_types: Sequence[ReportType] = (),
        next_token: Optional[str] = None,
        page_size: int = 50,
    ) -> Tuple[List[ReportStatusResponse], Optional[str]]:
        """
        List reports of the given types. With a continuation token, only the
        token is sent, verbatim.
        """
        if next_token:
            params: Dict[str, Any] = {"nextToken": next_token}
        else:
            params = {
                "reportTypes": ",".join(ReportType(t).value for t in report_types),
                "pageSize": page_size,
            }

        response = await self._make_request(
            "GET",
            f"/reports/{REPORTS_API_VERSION}/reports",
            params=params,
            endpoint="getReports",
        )
        reports = [ReportStatusResponse.model_validate(r) for r in response.get("reports", [])]
        return reports, response.get("nextToken")

    # Orders API

    async def list_orders_page(
        self,
        marketplace_id: str,
        last_updated_after: str,
        next_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        if next_token:
            params: Dict[str, Any] = {"NextToken": next_token}
        else:
            params = {
                "MarketplaceIds": marketplace_id,
                "LastUpdatedAfter": last_updated_after,
                "MaxResultsPerPage": ORDERS_MAX_RESULTS,
            }

        response = await self._make_request("GET", "/orders/v0/orders", params=params, endpoint="getOrders")
        payload = response.get("payload") or {}
        orders = payload.get("Orders") if isinstance(payload.get("Orders"), list) else []
        token = payload.get("NextToken") if isinstance(payload.get("NextToken"), str) else None
        return orders, token

    async def iter_orders(self, marketplace_id: str, last_updated_after: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield every order updated after the watermark, following NextToken."""
        next_token = None
        page_count = 0

        while True:
            orders, next_token = await self.list_orders_page(marketplace_id, last_updated_after, next_token)
            page_count += 1
            for order in orders:
                yield order

            if not next_token:
                logger.info("all_orders_fetched", marketplace_id=marketplace_id, total_pages=page_count)
                break

    async def list_order_items(self, amazon_order_id: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        next_token = None

        while True:
            params = {"NextToken": next_token} if next_token else None
            response = await self._make_request(
                "GET",
                f"/orders/v0/orders/{amazon_order_id}/orderItems",
                params=params,
                endpoint="getOrderItems",
            )
            payload = response.get("payload") or {}
            batch = payload.get("OrderItems")
            items.extend(batch if isinstance(batch, list) else [])
            next_token = payload.get("NextToken") if isinstance(payload.get("NextToken"), str) else None
            if not next_token:
                return items

    # FBA Inventory API

    async def list_inventory_summaries_page(
        self,
        marketplace_id: str,
        next_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        One page of marketplace-level inventory summaries with details.

        Raises:
            RemoteRequestError: If the page has no inventorySummaries list
        """
        if next_token:
            params: Dict[str, Any] = {"nextToken": next_token}
        else:
            params = {
                "granularityType": "Marketplace",
                "granularityId": marketplace_id,
                "marketplaceIds": marketplace_id,
                "details": "true",
            }

        response = await self._make_request(
            "GET",
            "/fba/inventory/v1/summaries",
            params=params,
            endpoint="getInventorySummaries",
        )
        summaries = (response.get("payload") or {}).get("inventorySummaries")
        if not isinstance(summaries, list):
            raise RemoteRequestError(
                "Unexpected inventory response: missing inventorySummaries",
                body=json.dumps(response),
            )
        pagination = response.get("pagination") or {}
        token = pagination.get("nextToken") if isinstance(pagination.get("nextToken"), str) else None
        return summaries, token

    async def list_inventory_summaries(self, marketplace_id: str) -> List[Dict[str, Any]]:
        """Every inventory summary in the marketplace, following nextToken."""
        summaries: List[Dict[str, Any]] = []
        next_token = None
        page_count = 0

        while True:
            batch, next_token = await self.list_inventory_summaries_page(marketplace_id, next_token)
            page_count += 1
            summaries.extend(batch)

            if not next_token:
                logger.info(
                    "inventory_summaries_fetched",
                    marketplace_id=marketplace_id,
                    total_pages=page_count,
                    count=len(summaries),
                )
                return summaries

    # Finances API

    async def list_financial_events(
        self,
        posted_after: datetime,
        posted_before: datetime,
        max_pages: Optional[int] = None,
    ) -> Tuple[Dict[str, List[Any]], List[str]]:
        """
        Fetch financial events in a posted-date window.

        Event lists from every page are concatenated per list name.

        Returns:
            Tuple of (merged FinancialEvents payload, warnings)
        """
        merged: Dict[str, List[Any]] = {}
        warnings: List[str] = []
        next_token = None
        pages = 0

        while True:
            if next_token:
                params: Dict[str, Any] = {"NextToken": next_token}
            else:
                params = {
                    "PostedAfter": to_iso8601(posted_after),
                    "PostedBefore": to_iso8601(posted_before),
                    "MaxResultsPerPage": ORDERS_MAX_RESULTS,
                }

            response = await self._make_request(
                "GET",
                "/finances/v0/financialEvents",
                params=params,
                endpoint="listFinancialEvents",
            )
            pages += 1
            payload = response.get("payload") or {}
            events = payload.get("FinancialEvents") or {}
            for key, value in events.items():
                if isinstance(value, list):
                    merged.setdefault(key, []).extend(value)

            next_token = payload.get("NextToken") if isinstance(payload.get("NextToken"), str) else None
            if not next_token:
                break
            if max_pages and pages >= max_pages:
                warnings.append(f"Stopped after {pages} pages of financial events; results are partial.")
                break

        logger.info("financial_events_fetched", pages=pages, lists=len(merged))
        return merged, warnings
