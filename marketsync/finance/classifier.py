"""Rule-based bucketing of financial entries."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Sequence

from marketsync.finance.events import FinancialEntry


class Bucket(str, Enum):
    """Accounting bucket for a financial entry."""
    REVENUE = "revenue"
    REFUNDS = "refunds"
    FEES = "fees"
    WITHHOLDINGS = "withholdings"
    OTHER_ADJUSTMENTS = "other_adjustments"
    EXCLUDED = "excluded"


REVENUE_KEYWORDS = (
    "principal",
    "itemprice",
    "itemcharge",
    "shippingcharge",
    "giftwrap",
    "promotion",
    "shippingchargeadjustment",
    "giftwrapchargeadjustment",
)
REFUND_KEYWORDS = ("refund", "return", "chargeback", "reversal", "cancel")
CHARGE_KEYWORDS = (
    "fee",
    "commission",
    "fba",
    "shipping",
    "storage",
    "disposal",
    "service",
    "handling",
    "removal",
    "subscription",
    "advertising",
    "gst",
)
WITHHOLDING_KEYWORDS = ("withheld", "withholding", "tds", "tcs")

EVENT_LIST_BUCKETS = {
    "Shipment": Bucket.REVENUE,
    "Refund": Bucket.REFUNDS,
    "ServiceFee": Bucket.FEES,
    "Adjustment": Bucket.OTHER_ADJUSTMENTS,
    "Chargeback": Bucket.OTHER_ADJUSTMENTS,
}

# Promotion payment events whose TotalAmount repeats their fee and tax lines
PROMOTION_ECHO_EVENTS = frozenset({"CouponPayment", "SellerDealPayment"})
PROMOTION_ECHO_FIELDS = frozenset({"TotalAmount"})


def entry_label(entry: FinancialEntry) -> str:
    """Combined type, description and event type, lowercased."""
    return f"{entry.amount_type or ''} {entry.amount_description or ''} {entry.event_type}".lower()


def _contains_any(label: str, keywords: Sequence[str]) -> bool:
    return any(keyword in label for keyword in keywords)


def is_promotion_echo(entry: FinancialEntry) -> bool:
    if entry.event_type in PROMOTION_ECHO_EVENTS and entry.field_name in PROMOTION_ECHO_FIELDS:
        return True
    return "promotionmetadata" in (entry.amount_description or "").lower()


@dataclass(frozen=True)
class ClassificationRule:
    """A single classification rule."""
    name: str
    bucket: Bucket
    matches: Callable[[FinancialEntry, str], bool]
    description: str


@dataclass(frozen=True)
class Classification:
    bucket: Bucket
    rule: str
    heuristic: bool = False


# Evaluated in order; the first match wins
CLASSIFICATION_RULES: List[ClassificationRule] = [
    ClassificationRule(
        name="promotion_echo",
        bucket=Bucket.EXCLUDED,
        matches=lambda entry, label: is_promotion_echo(entry),
        description="Promotion metadata repeating amounts captured elsewhere",
    ),
    ClassificationRule(
        name="withholding_keyword",
        bucket=Bucket.WITHHOLDINGS,
        matches=lambda entry, label: _contains_any(label, WITHHOLDING_KEYWORDS),
        description="Tax withheld at source",
    ),
    *[
        ClassificationRule(
            name=f"event_list_{event_type.lower()}",
            bucket=bucket,
            matches=lambda entry, label, event_type=event_type: entry.event_type == event_type,
            description=f"{event_type}EventList entry",
        )
        for event_type, bucket in EVENT_LIST_BUCKETS.items()
    ],
    ClassificationRule(
        name="refund_keyword",
        bucket=Bucket.REFUNDS,
        matches=lambda entry, label: _contains_any(label, REFUND_KEYWORDS),
        description="Refund vocabulary",
    ),
    ClassificationRule(
        name="charge_keyword",
        bucket=Bucket.FEES,
        matches=lambda entry, label: _contains_any(label, CHARGE_KEYWORDS),
        description="Marketplace charge vocabulary",
    ),
    ClassificationRule(
        name="revenue_keyword",
        bucket=Bucket.REVENUE,
        matches=lambda entry, label: _contains_any(label, REVENUE_KEYWORDS),
        description="Sales vocabulary",
    ),
]


def classify(entry: FinancialEntry, rules: Sequence[ClassificationRule] = CLASSIFICATION_RULES) -> Classification:
    """
    Assign an entry to a bucket.

    Depends only on the entry's fields. When no rule matches, the sign
    decides (negative amounts are fees) and the result is flagged as
    heuristic.
    """
    label = entry_label(entry)
    for rule in rules:
        if rule.matches(entry, label):
            return Classification(bucket=rule.bucket, rule=rule.name)

    if entry.amount < 0:
        return Classification(bucket=Bucket.FEES, rule="sign_heuristic", heuristic=True)
    return Classification(bucket=Bucket.REVENUE, rule="sign_heuristic", heuristic=True)
