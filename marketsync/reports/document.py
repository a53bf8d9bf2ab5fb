"""Report document download and decompression."""

import gzip
import zlib
from typing import Optional
import httpx
import structlog

from marketsync.errors import DocumentFetchError
from marketsync.monitoring import metrics
from marketsync.spapi.client import ReportDocument

logger = structlog.get_logger(__name__)

UTF8_BOM = "\ufeff"


def decode_document(raw: bytes, compression_algorithm: Optional[str] = None) -> str:
    """
    Decompress and decode a report body.

    Args:
        raw: Downloaded bytes
        compression_algorithm: Value from the document handle; GZIP in any case

    Returns:
        Document text without a leading byte-order mark; invalid UTF-8
        bytes become U+FFFD and are logged

    Raises:
        DocumentFetchError: If decompression fails
    """
    if compression_algorithm and compression_algorithm.upper() == "GZIP":
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError, zlib.error) as e:
            raise DocumentFetchError(f"Failed to decompress report document: {e}") from e

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        # Invalid bytes are replaced, never fatal
        text = raw.decode("utf-8", errors="replace")
        logger.warning(
            "report_document_invalid_utf8",
            first_bad_offset=e.start,
            replaced=text.count("\ufffd"),
        )
    if text.startswith(UTF8_BOM):
        text = text[len(UTF8_BOM):]
    return text


class DocumentFetcher:
    """Downloads report documents from their pre-signed URLs."""

    def __init__(self, timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def fetch(self, document: ReportDocument) -> str:
        """
        Download a report document.

        The URL is pre-signed, so the request carries no SP-API headers.

        Returns:
            Decoded document text

        Raises:
            DocumentFetchError: On transport errors, non-2xx or bad compression
        """
        logger.info("fetching_report_document", document_id=document.report_document_id)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(document.url)
        except httpx.HTTPError as e:
            raise DocumentFetchError(f"Report document download failed: {e}") from e

        if not response.is_success:
            logger.error(
                "report_document_download_failed",
                document_id=document.report_document_id,
                status=response.status_code,
            )
            raise DocumentFetchError(
                f"Report document download failed ({response.status_code}): {response.text[:500]}"
            )

        metrics.report_document_bytes.observe(len(response.content))
        text = decode_document(response.content, document.compression_algorithm)

        logger.info(
            "report_document_fetched",
            document_id=document.report_document_id,
            bytes=len(response.content),
            compressed=bool(document.compression_algorithm),
        )
        return text
