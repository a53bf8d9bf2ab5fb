"""Cashflow aggregation over classified financial entries."""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import structlog

from marketsync.errors import ClassificationWarning
from marketsync.finance.classifier import Bucket, classify
from marketsync.finance.events import FinancialEntry
from marketsync.monitoring import metrics

logger = structlog.get_logger(__name__)

MAX_RANGE_DAYS = 60
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

ZERO = Decimal("0")


def parse_date_range(start: Optional[str], end: Optional[str]) -> Tuple[datetime, datetime]:
    """
    Validate a ``YYYY-MM-DD`` window of at most 60 days, both ends inclusive.

    Returns:
        (start of first day, last microsecond of last day), both UTC

    Raises:
        ValueError: On bad format, reversed range or a range that is too long
    """
    if not start or not end or not _DATE_PATTERN.match(start) or not _DATE_PATTERN.match(end):
        raise ValueError("Invalid start or end date. Use YYYY-MM-DD format.")
    try:
        start_day = date.fromisoformat(start)
        end_day = date.fromisoformat(end)
    except ValueError:
        raise ValueError("Invalid date range.")

    if start_day > end_day:
        raise ValueError("Start date must be before end date.")
    if (end_day - start_day).days + 1 > MAX_RANGE_DAYS:
        raise ValueError(f"Date range must be {MAX_RANGE_DAYS} days or less.")

    return (
        datetime.combine(start_day, time.min, tzinfo=timezone.utc),
        datetime.combine(end_day, time.max, tzinfo=timezone.utc),
    )


@dataclass
class BucketTotals:
    """Per-currency totals."""

    gross_sales: Decimal = ZERO
    refunds: Decimal = ZERO
    amazon_fees: Decimal = ZERO
    withholdings: Decimal = ZERO
    other_adjustments: Decimal = ZERO
    net_cashflow: Decimal = ZERO

    @property
    def net_sales(self) -> Decimal:
        return self.gross_sales + self.refunds

    def add(self, bucket: Bucket, amount: Decimal) -> None:
        if bucket == Bucket.EXCLUDED:
            return
        self.net_cashflow += amount
        if bucket == Bucket.REVENUE:
            self.gross_sales += amount
        elif bucket == Bucket.REFUNDS:
            self.refunds += amount
        elif bucket == Bucket.FEES:
            self.amazon_fees += amount
        elif bucket == Bucket.WITHHOLDINGS:
            self.withholdings += amount
        else:
            self.other_adjustments += amount

    def to_dict(self) -> Dict[str, str]:
        return {
            "gross_sales": str(self.gross_sales),
            "refunds": str(self.refunds),
            "net_sales": str(self.net_sales),
            "amazon_fees": str(self.amazon_fees),
            "withholdings": str(self.withholdings),
            "other_adjustments": str(self.other_adjustments),
            "net_cashflow": str(self.net_cashflow),
        }


@dataclass
class BreakdownEntry:
    key: str
    amount: Decimal = ZERO
    count: int = 0


@dataclass
class CashflowSummary:
    """Aggregated cashflow with drill-down and data-quality warnings."""

    totals_by_currency: Dict[str, BucketTotals] = field(default_factory=dict)
    breakdown: Dict[str, List[BreakdownEntry]] = field(default_factory=dict)
    warnings: List[UserWarning] = field(default_factory=list)
    event_groups_count: int = 0
    entries_count: int = 0
    heuristic_count: int = 0

    @property
    def heuristic_used(self) -> bool:
        return self.heuristic_count > 0

    @property
    def warning_messages(self) -> List[str]:
        return [str(w) for w in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totals_by_currency": {c: t.to_dict() for c, t in self.totals_by_currency.items()},
            "breakdown": {
                bucket: [{"key": b.key, "amount": str(b.amount), "count": b.count} for b in items]
                for bucket, items in self.breakdown.items()
            },
            "warnings": self.warning_messages,
            "debug": {
                "event_groups_count": self.event_groups_count,
                "events_count": self.entries_count,
                "heuristic_count": self.heuristic_count,
            },
        }


def summarize_cashflow(entries: Iterable[FinancialEntry], warnings: Iterable[str] = ()) -> CashflowSummary:
    """
    Bucket entries and total them per currency.

    Breakdowns group by ``"{amount type} • {description}"`` within each
    bucket and are sorted by absolute amount, largest first. Totals do not
    depend on entry order.

    Args:
        entries: Normalized financial entries
        warnings: Messages gathered upstream (e.g. partial pagination)

    Returns:
        CashflowSummary
    """
    summary = CashflowSummary(warnings=[UserWarning(w) for w in warnings])
    breakdowns: Dict[Bucket, Dict[str, BreakdownEntry]] = {}
    groups = set()

    for entry in entries:
        summary.entries_count += 1
        if entry.event_group_id:
            groups.add(entry.event_group_id)

        result = classify(entry)
        if result.heuristic:
            summary.heuristic_count += 1
            metrics.classification_heuristic_total.inc()

        totals = summary.totals_by_currency.setdefault(entry.currency, BucketTotals())
        totals.add(result.bucket, entry.amount)

        if result.bucket == Bucket.EXCLUDED:
            continue
        bucket_breakdown = breakdowns.setdefault(result.bucket, {})
        item = bucket_breakdown.setdefault(entry.breakdown_key, BreakdownEntry(key=entry.breakdown_key))
        item.amount += entry.amount
        item.count += 1

    summary.event_groups_count = len(groups)
    summary.breakdown = {
        bucket.value: sorted(items.values(), key=lambda b: (-abs(b.amount), b.key))
        for bucket, items in breakdowns.items()
    }

    currencies = sorted(summary.totals_by_currency)
    if len(currencies) > 1:
        summary.warnings.append(UserWarning(f"Multiple currencies detected: {', '.join(currencies)}"))
    if summary.heuristic_used:
        summary.warnings.append(ClassificationWarning(
            f"{summary.heuristic_count} entries were bucketed by amount sign because no rule matched."
        ))
        logger.warning("classification_heuristic_used", count=summary.heuristic_count)

    return summary
