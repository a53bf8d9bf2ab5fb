"""Tests for report document download and decoding."""

import gzip
import httpx
import pytest
from unittest.mock import MagicMock

from marketsync.errors import DocumentFetchError
from marketsync.reports import document
from marketsync.reports.document import DocumentFetcher, decode_document
from marketsync.spapi.client import ReportDocument


def test_decode_plain_document_strips_bom():
    """Test a leading byte-order mark is dropped."""
    raw = "\ufeffsku\tqty\n".encode("utf-8")
    assert decode_document(raw) == "sku\tqty\n"


@pytest.mark.parametrize("algorithm", ["GZIP", "gzip", "Gzip"])
def test_decode_gzip_document_any_case(algorithm):
    """Test GZIP is recognized case-insensitively."""
    raw = gzip.compress("sku\tqty\nA\t1\n".encode("utf-8"))
    assert decode_document(raw, algorithm) == "sku\tqty\nA\t1\n"


def test_decode_invalid_utf8_is_replaced_and_logged(monkeypatch):
    """Test invalid UTF-8 bytes are replaced and a warning is logged."""
    log = MagicMock()
    monkeypatch.setattr(document, "logger", log)

    text = decode_document(b"sku\ttitle\nA\tCaf\xe9\n")

    assert text == "sku\ttitle\nA\tCaf\ufffd\n"
    log.warning.assert_called_once_with("report_document_invalid_utf8", first_bad_offset=15, replaced=1)


def test_decode_valid_utf8_logs_nothing(monkeypatch):
    log = MagicMock()
    monkeypatch.setattr(document, "logger", log)

    assert decode_document("sku\tCafé\n".encode("utf-8")) == "sku\tCafé\n"
    log.warning.assert_not_called()


def test_decode_corrupt_gzip_raises():
    """Test undecompressable bodies raise DocumentFetchError."""
    with pytest.raises(DocumentFetchError):
        decode_document(b"definitely not gzip", "GZIP")


@pytest.mark.asyncio
async def test_fetch_downloads_without_signing(fake_amazon, fetcher):
    """Test the pre-signed URL is fetched without SP-API headers."""
    fake_amazon.add_document("amzn1.spdoc.1", "a\tb\n1\t2\n", compress=True)
    document = ReportDocument(
        reportDocumentId="amzn1.spdoc.1",
        url="https://tortuga-prod-eu.s3-eu-west-1.amazonaws.com/amzn1.spdoc.1",
        compressionAlgorithm="GZIP",
    )

    text = await fetcher.fetch(document)

    assert text == "a\tb\n1\t2\n"
    request = fake_amazon.calls("GET", "/amzn1.spdoc.1")[0]
    assert "Authorization" not in request.headers
    assert "x-amz-access-token" not in request.headers


@pytest.mark.asyncio
async def test_fetch_non_success_raises():
    """Test a non-2xx download raises DocumentFetchError."""
    transport = httpx.MockTransport(lambda request: httpx.Response(403, text="AccessDenied"))
    fetcher = DocumentFetcher(transport=transport)

    with pytest.raises(DocumentFetchError, match="403"):
        await fetcher.fetch(ReportDocument(url="https://example.com/doc"))
