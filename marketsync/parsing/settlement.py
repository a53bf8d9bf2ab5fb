"""Settlement flat file preview and normalization."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from marketsync.errors import ParseError
from marketsync.parsing.delimited import (
    HEADER_TOKENS,
    SYNONYMS,
    detect_header_row,
    normalize_header,
    parse_amount,
    parse_int,
    split_rows,
)

logger = structlog.get_logger(__name__)

RAW_HEADER_LINES = 20
DEFAULT_PREVIEW_ROWS = 200
UNKNOWN_CURRENCY = "UNKNOWN"

AMOUNT_HEADERS = ["amount", "total-amount"]
CURRENCY_HEADERS = ["currency", "amount-currency", "currency-code"]


@dataclass
class SettlementPreview:
    """Parsed settlement report, capped for display."""

    raw_header: List[str]
    columns: List[str]
    rows: List[Dict[str, str]]
    totals_by_currency: Dict[str, Decimal]
    row_count: int
    sample_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_header": self.raw_header,
            "columns": self.columns,
            "rows": self.rows,
            "totals_by_currency": {k: str(v) for k, v in self.totals_by_currency.items()},
            "row_count": self.row_count,
            "sample_count": self.sample_count,
        }


@dataclass
class SettlementSummary:
    settlement_id: Optional[str]
    period_start: Optional[str]
    period_end: Optional[str]
    deposit_date: Optional[str]
    total_amount: Optional[Decimal]
    currency: Optional[str]


@dataclass
class NormalizedSettlement:
    """Summary plus one normalized row per settlement line."""

    summary: SettlementSummary
    rows: List[Dict[str, Any]] = field(default_factory=list)


def _first_column(columns: List[str], candidates: List[str]) -> Optional[str]:
    normalized = [normalize_header(c) for c in columns]
    for candidate in candidates:
        key = normalize_header(candidate)
        if key in normalized:
            return columns[normalized.index(key)]
    return None


def _records(text: str):
    """Split the report and key each data row by its header cell."""
    rows = split_rows(text, delimiter="\t")
    if not rows:
        return [], []
    header_index = detect_header_row(rows, HEADER_TOKENS["settlement"])
    columns = [cell.strip() for cell in rows[header_index]]
    records = []
    for row in rows[header_index + 1:]:
        records.append({
            column: (row[i].strip() if i < len(row) else "")
            for i, column in enumerate(columns)
        })
    return columns, records


def preview_settlement(text: str, max_rows: int = DEFAULT_PREVIEW_ROWS) -> SettlementPreview:
    """
    Parse a settlement report for preview.

    Totals cover every row, not only the previewed ones. Rows whose amount
    cannot be parsed are left out of the totals.

    Args:
        text: Decoded report text
        max_rows: Preview row cap

    Returns:
        SettlementPreview
    """
    text = text.replace("\ufeff", "")
    raw_header = text.splitlines()[:RAW_HEADER_LINES]
    columns, records = _records(text)

    amount_column = _first_column(columns, AMOUNT_HEADERS)
    currency_column = _first_column(columns, CURRENCY_HEADERS)

    totals: Dict[str, Decimal] = {}
    if amount_column is not None:
        for record in records:
            amount = parse_amount(record.get(amount_column))
            if amount is None:
                continue
            currency = (record.get(currency_column) if currency_column else "") or UNKNOWN_CURRENCY
            totals[currency] = totals.get(currency, Decimal("0")) + amount

    preview_rows = records[:max_rows]
    return SettlementPreview(
        raw_header=raw_header,
        columns=columns,
        rows=preview_rows,
        totals_by_currency=totals,
        row_count=len(records),
        sample_count=len(preview_rows),
    )


def _date_part(value: Optional[str]) -> Optional[str]:
    if not value or not value.strip():
        return None
    value = value.strip()
    return value[:10] if len(value) >= 10 else value


def normalize_settlement(text: str, report_id: str) -> NormalizedSettlement:
    """
    Split a settlement report into its summary row and normalized lines.

    The summary is the first row with an empty transaction type.

    Raises:
        ParseError: If the report has no rows or no summary row
    """
    columns, records = _records(text.replace("\ufeff", ""))
    if not columns or not records:
        raise ParseError("Settlement report has no rows.")

    col = {name: _first_column(columns, synonyms) for name, synonyms in SYNONYMS["settlement"].items()}

    def value(record: Dict[str, str], name: str) -> str:
        column = col.get(name)
        return (record.get(column) or "").strip() if column else ""

    summary_row = None
    if col["transaction_type"]:
        summary_row = next((r for r in records if value(r, "transaction_type") == ""), None)
    if summary_row is None:
        raise ParseError("Settlement summary row not found.")

    total_raw = value(summary_row, "total_amount")
    summary = SettlementSummary(
        settlement_id=value(summary_row, "settlement_id") or report_id,
        period_start=_date_part(value(summary_row, "settlement_start_date")),
        period_end=_date_part(value(summary_row, "settlement_end_date")),
        deposit_date=_date_part(value(summary_row, "deposit_date")),
        total_amount=parse_amount(total_raw) if total_raw else None,
        currency=value(summary_row, "currency") or None,
    )

    rows = []
    for record in records:
        if record is summary_row:
            continue

        transaction_type = value(record, "transaction_type")
        amount_type = value(record, "amount_type")
        amount_description = value(record, "amount_description")
        kind = normalize_header(f"{amount_type} {amount_description}")
        txn_kind = normalize_header(transaction_type)
        is_refund = "refund" in txn_kind

        amount = parse_amount(value(record, "amount") or None)

        def when(*needles: str) -> Optional[Decimal]:
            if amount is None:
                return None
            return amount if any(n in kind for n in needles) else None

        label_parts = [p for p in (transaction_type, amount_type, amount_description) if p]
        rows.append({
            "txn_date": _date_part(
                value(record, "posted_date") or value(record, "posted_date_time") or summary.deposit_date
            ),
            "order_id": value(record, "order_id") or None,
            "sub_order_id": (
                value(record, "merchant_order_id")
                or value(record, "shipment_id")
                or value(record, "adjustment_id")
                or None
            ),
            "sku": value(record, "sku") or value(record, "order_item_code") or None,
            "qty": parse_int(value(record, "quantity") or None),
            "gross_sales": None if is_refund else when("principal", "itemprice"),
            "net_payout": amount,
            "total_fees": when("fee", "commission", "shipping", "fulfillment"),
            "shipping_fee": when("shipping"),
            "commission_fee": when("commission"),
            "fixed_fee": when("fixed"),
            "closing_fee": when("closing"),
            "refund_amount": amount if is_refund else None,
            "other_charges": when("other"),
            "settlement_type": " / ".join(label_parts) if label_parts else None,
            "raw": record,
        })

    logger.info(
        "settlement_normalized",
        report_id=report_id,
        settlement_id=summary.settlement_id,
        rows=len(rows),
    )
    return NormalizedSettlement(summary=summary, rows=rows)
