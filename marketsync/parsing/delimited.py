"""Delimited report parsing with header detection and synonym column mapping."""

import csv
import io
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
import structlog

from marketsync.errors import ParseError

logger = structlog.get_logger(__name__)

CANDIDATE_DELIMITERS = ("\t", ",", "|")
DELIMITER_SAMPLE_LINES = 10

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")

# Report family -> tokens a header row is expected to contain
HEADER_TOKENS: Dict[str, List[str]] = {
    "settlement": [
        "settlement-id",
        "settlement-start-date",
        "settlement-end-date",
        "posted-date",
        "amount",
        "total-amount",
        "amount-type",
        "transaction-type",
        "order-id",
        "currency",
        "amount-currency",
    ],
    "orders": [
        "amazon-order-id",
        "order-id",
        "purchase-date",
        "order-status",
        "sku",
        "asin",
        "quantity",
        "item-price",
        "currency",
    ],
    "inventory": [
        "sku",
        "seller-sku",
        "fnsku",
        "asin",
        "afn-fulfillable-quantity",
        "afn-warehouse-quantity",
        "afn-reserved-quantity",
        "condition",
    ],
    "returns": [
        "order-id",
        "return-date",
        "sku",
        "asin",
        "quantity",
        "reason",
        "status",
        "disposition",
    ],
}

# Report family -> canonical field -> ordered synonyms
SYNONYMS: Dict[str, Dict[str, List[str]]] = {
    "orders": {
        "order_id": ["order-id", "amazon-order-id"],
        "purchase_date": ["purchase-date", "order-date", "order-date-utc", "purchase-date-time"],
        "order_status": ["order-status", "status"],
        "fulfillment_channel": ["fulfillment-channel"],
        "sales_channel": ["sales-channel"],
        "buyer_email": ["buyer-email", "buyer-email-address"],
        "buyer_name": ["buyer-name"],
        "ship_state": ["ship-state", "shipping-address-state", "shipping-state", "ship-state-province"],
        "ship_city": ["ship-city", "shipping-address-city", "shipping-city"],
        "ship_postal_code": ["ship-postal-code", "shipping-address-postal-code", "postal-code"],
        "sku": ["sku", "seller-sku", "merchant-sku"],
        "asin": ["asin", "asin-1"],
        "fnsku": ["fnsku", "fnsku-id"],
        "quantity": ["quantity", "quantity-ordered", "quantity-purchased"],
        "item_amount": ["item-price", "item-price-amount", "item-amount"],
        "item_tax": ["item-tax", "item-tax-amount"],
        "shipping_amount": ["shipping-price", "shipping-amount"],
        "shipping_tax": ["shipping-tax", "shipping-tax-amount"],
        "gift_wrap_amount": ["gift-wrap-price", "gift-wrap-amount"],
        "promo_discount": [
            "promotion-discount",
            "promotion-discount-amount",
            "item-promotion-discount",
            "item-promotion-discount-amount",
        ],
        "currency": ["currency", "currency-code"],
        "order_item_id": ["order-item-id", "order-item-identifier"],
    },
    "inventory": {
        "sku": ["seller-sku", "merchant-sku", "sku"],
        "asin": ["asin"],
        "fnsku": ["fnsku"],
        "condition": ["condition"],
        "available": ["available", "afn-fulfillable-quantity", "afn-warehouse-quantity"],
        "reserved": ["reserved", "afn-reserved-quantity"],
        "inbound_working": ["afn-inbound-working-quantity"],
        "inbound_shipped": ["afn-inbound-shipped-quantity"],
        "inbound_receiving": ["afn-inbound-receiving-quantity"],
        "inbound": ["inbound"],
        "location": ["fulfillment-center-id", "location"],
    },
    "returns": {
        "order_id": ["order-id", "amazon-order-id"],
        "return_date": ["return-date", "return-date-utc", "return-request-date", "return-date-time"],
        "sku": ["sku", "merchant-sku", "seller-sku", "seller-sku-id", "merchant-sku-id"],
        "asin": ["asin", "asin-1"],
        "quantity": ["quantity", "qty", "return-quantity", "return-qty", "quantity-returned"],
        "reason": ["reason", "return-reason", "customer-return-reason"],
        "rma_id": ["rma-id", "return-merchandise-authorization-id"],
        "status": ["status", "return-status"],
        "disposition": ["disposition", "return-disposition"],
        "currency": ["currency", "currency-code"],
        "amount": ["amount", "amount-reported", "refund-amount", "return-amount", "return-credit"],
    },
    "settlement": {
        "settlement_id": ["settlement-id"],
        "settlement_start_date": ["settlement-start-date"],
        "settlement_end_date": ["settlement-end-date"],
        "deposit_date": ["deposit-date"],
        "total_amount": ["total-amount"],
        "currency": ["currency", "amount-currency", "currency-code"],
        "transaction_type": ["transaction-type"],
        "order_id": ["order-id"],
        "merchant_order_id": ["merchant-order-id"],
        "adjustment_id": ["adjustment-id"],
        "shipment_id": ["shipment-id"],
        "marketplace_name": ["marketplace-name"],
        "amount_type": ["amount-type"],
        "amount_description": ["amount-description"],
        "amount": ["amount"],
        "fulfillment_id": ["fulfillment-id"],
        "posted_date": ["posted-date"],
        "posted_date_time": ["posted-date-time"],
        "order_item_code": ["order-item-code"],
        "sku": ["sku"],
        "quantity": ["quantity-purchased", "quantity"],
    },
}


@dataclass
class ParsedTable:
    """Result of parsing one delimited report."""

    delimiter: str
    header_index: int
    headers: List[str]
    columns: Dict[str, Optional[int]]
    rows: List[Dict[str, Optional[str]]] = field(default_factory=list)
    raw_rows: List[List[str]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def has_field(self, name: str) -> bool:
        return self.columns.get(name) is not None


def normalize_header(value: str) -> str:
    """Lowercase and drop everything that is not a letter or digit."""
    return _NON_ALNUM.sub("", value.strip().lower())


def detect_delimiter(text: str) -> str:
    """
    Pick the delimiter that occurs most often in the first non-blank lines.

    Tab wins ties, since Amazon flat files are tab-separated.
    """
    sample = [line for line in text.splitlines() if line.strip()][:DELIMITER_SAMPLE_LINES]
    best = CANDIDATE_DELIMITERS[0]
    best_count = -1
    for delimiter in CANDIDATE_DELIMITERS:
        count = sum(line.count(delimiter) for line in sample)
        if count > best_count:
            best, best_count = delimiter, count
    return best


def is_skippable_row(row: Sequence[str]) -> bool:
    """Blank rows and single-cell ``#`` comment rows carry no data."""
    cells = [cell.strip() for cell in row]
    if not any(cells):
        return True
    non_empty = [cell for cell in cells if cell]
    return len(non_empty) == 1 and non_empty[0].startswith("#")


def split_rows(text: str, delimiter: Optional[str] = None) -> List[List[str]]:
    """Split report text into cell rows, honouring quoted fields."""
    delimiter = delimiter or detect_delimiter(text)
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    return [row for row in reader if not is_skippable_row(row)]


def detect_header_row(rows: Sequence[Sequence[str]], expected_tokens: Iterable[str]) -> int:
    """
    Find the header row among banner and preamble lines.

    A row is the header when it matches at least two expected tokens, or one
    token while holding ten or more non-empty cells. Without such a row, the
    first row with more than one non-empty cell is used, else row 0.
    """
    expected = {normalize_header(token) for token in expected_tokens}
    fallback = -1

    for index, row in enumerate(rows):
        cells = [cell.strip() for cell in row]
        non_empty = [cell for cell in cells if cell]
        if len(non_empty) <= 1:
            continue
        if fallback == -1:
            fallback = index

        normalized = {normalize_header(cell) for cell in non_empty}
        matches = len(expected & normalized)
        if matches >= 2 or (matches >= 1 and len(non_empty) >= 10):
            return index

    return 0 if fallback == -1 else fallback


def find_column(headers: Sequence[str], candidates: Iterable[str]) -> Optional[int]:
    """Index of the first candidate present in headers, in candidate order."""
    normalized = [normalize_header(h) for h in headers]
    for candidate in candidates:
        key = normalize_header(candidate)
        if key in normalized:
            return normalized.index(key)
    return None


def map_columns(headers: Sequence[str], synonyms: Mapping[str, Sequence[str]]) -> Dict[str, Optional[int]]:
    """Resolve each canonical field to a column index, or None when absent."""
    return {name: find_column(headers, candidates) for name, candidates in synonyms.items()}


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse a money cell, keeping only digits, ``.`` and ``-``.

    Returns:
        Decimal, or None when nothing numeric remains
    """
    if value is None:
        return None
    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned or cleaned in ("-", ".", "-."):
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_int(value: Optional[str]) -> Optional[int]:
    """Parse a quantity cell, truncating any fraction."""
    amount = parse_amount(value)
    if amount is None:
        return None
    return int(amount)


_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S %Z",
    "%Y-%m-%d %H:%M:%S",
    "%d.%m.%Y %H:%M:%S %Z",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
    "%d-%b-%Y",
)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse the date spellings seen in Amazon flat files.

    Naive results are taken as UTC.
    """
    if not value or not value.strip():
        return None
    text = value.strip()

    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def row_to_record(row: Sequence[str], columns: Mapping[str, Optional[int]]) -> Dict[str, Optional[str]]:
    """Project a raw row onto canonical fields; empty cells become None."""
    record: Dict[str, Optional[str]] = {}
    for name, index in columns.items():
        if index is None or index >= len(row):
            record[name] = None
            continue
        cell = row[index].strip()
        record[name] = cell or None
    return record


def parse_table(
    text: str,
    family: str,
    synonyms: Optional[Mapping[str, Sequence[str]]] = None,
    expected_tokens: Optional[Iterable[str]] = None,
    delimiter: Optional[str] = None,
) -> ParsedTable:
    """
    Parse a delimited report into canonical records.

    Args:
        text: Decoded report text
        family: Report family key (orders, inventory, returns, settlement)
        synonyms: Column synonyms (defaults to the family's)
        expected_tokens: Header tokens (defaults to the family's)
        delimiter: Force a delimiter instead of detecting it

    Returns:
        ParsedTable; an empty body yields a table with no rows

    Raises:
        ParseError: If the family is unknown and no synonyms are given
    """
    if synonyms is None:
        if family not in SYNONYMS:
            raise ParseError(f"Unknown report family: {family}")
        synonyms = SYNONYMS[family]
    if expected_tokens is None:
        expected_tokens = HEADER_TOKENS.get(family, [c for names in synonyms.values() for c in names])

    text = text.lstrip("\ufeff")
    delimiter = delimiter or detect_delimiter(text)
    rows = split_rows(text, delimiter)

    if not rows:
        return ParsedTable(delimiter=delimiter, header_index=0, headers=[], columns=map_columns([], synonyms))

    header_index = detect_header_row(rows, expected_tokens)
    headers = [cell.strip() for cell in rows[header_index]]
    columns = map_columns(headers, synonyms)
    data_rows = rows[header_index + 1:]

    logger.debug(
        "report_table_parsed",
        family=family,
        header_index=header_index,
        columns=len(headers),
        rows=len(data_rows),
    )

    return ParsedTable(
        delimiter=delimiter,
        header_index=header_index,
        headers=headers,
        columns=columns,
        rows=[row_to_record(row, columns) for row in data_rows],
        raw_rows=data_rows,
    )
