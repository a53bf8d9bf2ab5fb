"""Recursive extraction of monetary line items from financial events."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

# Fields naming what an amount is, checked in order on the containing object
AMOUNT_TYPE_FIELDS = (
    "ChargeType",
    "FeeType",
    "TaxType",
    "PromotionType",
    "AdjustmentType",
    "OtherChargeType",
    "OtherFeeType",
    "RefundType",
    "ChargebackType",
    "LoanType",
    "FeeReason",
)

EVENT_LIST_SUFFIX = "EventList"
UNKNOWN_EVENT_GROUP = "unknown"


@dataclass(frozen=True)
class FinancialEntry:
    """One monetary sub-field of a financial event."""

    posted_at: Optional[datetime]
    event_group_id: str
    amazon_order_id: Optional[str]
    event_type: str
    source_path: str
    field_name: str
    amount_type: Optional[str]
    amount_description: Optional[str]
    amount: Decimal
    currency: str

    @property
    def breakdown_key(self) -> str:
        return f"{self.amount_type or 'Unknown'} • {self.amount_description or 'Uncategorized'}"


def find_money(value: Any) -> Optional[Tuple[Decimal, str]]:
    """Return (amount, currency) if value has the SP-API money shape."""
    if not isinstance(value, Mapping):
        return None
    raw_amount = value.get("CurrencyAmount")
    currency = value.get("CurrencyCode")
    if raw_amount is None or not isinstance(currency, str) or isinstance(raw_amount, bool):
        return None
    try:
        amount = Decimal(str(raw_amount))
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount, currency


def get_amount_type(record: Mapping[str, Any]) -> Optional[str]:
    for key in AMOUNT_TYPE_FIELDS:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def extract_amounts(value: Any, list_key: str, context: Sequence[str] = ()) -> List[Dict[str, Any]]:
    """
    Walk an event and capture every money object.

    Money held directly by an object is emitted before descending into its
    children. The description is the nearest enclosing key, or the money
    field's own key at the top of the event.
    """
    entries: List[Dict[str, Any]] = []

    if isinstance(value, list):
        for index, item in enumerate(value):
            entries.extend(extract_amounts(item, list_key, [*context, str(index)]))
        return entries

    if not isinstance(value, Mapping):
        return entries

    for key, child in value.items():
        money = find_money(child)
        if money is None:
            continue
        amount, currency = money
        entries.append({
            "amount": amount,
            "currency": currency,
            "amount_type": get_amount_type(value),
            "amount_description": _description(context, key),
            "field_name": key,
            "source_path": f"{list_key}.{key}",
        })

    for key, child in value.items():
        if isinstance(child, (Mapping, list)):
            entries.extend(extract_amounts(child, list_key, [*context, key]))

    return entries


def _description(context: Sequence[str], key: str) -> str:
    # List indices are positional, so skip back to the nearest named key
    for part in reversed(context):
        if not part.isdigit():
            return part
    return key


def _parse_posted(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_financial_events(
    payload: Mapping[str, Any],
    event_group_id: Optional[str] = None,
) -> List[FinancialEntry]:
    """
    Flatten a FinancialEvents payload into entries.

    Only ``*EventList`` keys holding lists are read. Every money object in
    every event yields one entry.

    Args:
        payload: FinancialEvents object (event list name -> events)
        event_group_id: Group to stamp on entries; falls back to each
            event's FinancialEventGroupId

    Returns:
        FinancialEntry list, in payload order
    """
    entries: List[FinancialEntry] = []

    for list_key, events in payload.items():
        if not list_key.endswith(EVENT_LIST_SUFFIX) or not isinstance(events, list):
            continue
        event_type = list_key[: -len(EVENT_LIST_SUFFIX)]

        for event in events:
            if not isinstance(event, Mapping):
                continue
            posted_at = _parse_posted(event.get("PostedDate"))
            order_id = event.get("AmazonOrderId") if isinstance(event.get("AmazonOrderId"), str) else None
            group_id = event_group_id or (
                event.get("FinancialEventGroupId")
                if isinstance(event.get("FinancialEventGroupId"), str)
                else UNKNOWN_EVENT_GROUP
            )

            for extracted in extract_amounts(event, list_key):
                entries.append(FinancialEntry(
                    posted_at=posted_at,
                    event_group_id=group_id,
                    amazon_order_id=order_id,
                    event_type=event_type,
                    **extracted,
                ))

    return entries
