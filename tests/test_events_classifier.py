"""Tests for financial event extraction and classification."""

import pytest
from decimal import Decimal

from marketsync.finance.classifier import Bucket, classify
from marketsync.finance.events import (
    FinancialEntry,
    extract_amounts,
    find_money,
    get_amount_type,
    normalize_financial_events,
)


def make_entry(event_type="Mystery", amount_type=None, description=None, amount="-1", field_name="Amount"):
    return FinancialEntry(
        posted_at=None,
        event_group_id="g1",
        amazon_order_id=None,
        event_type=event_type,
        source_path=f"{event_type}EventList.{field_name}",
        field_name=field_name,
        amount_type=amount_type,
        amount_description=description,
        amount=Decimal(amount),
        currency="INR",
    )


def test_find_money():
    """Test only the CurrencyAmount / CurrencyCode shape is money."""
    assert find_money({"CurrencyAmount": 12.5, "CurrencyCode": "INR"}) == (Decimal("12.5"), "INR")
    assert find_money({"CurrencyAmount": "7", "CurrencyCode": "USD"}) == (Decimal("7"), "USD")
    assert find_money({"CurrencyAmount": 1}) is None
    assert find_money({"CurrencyAmount": True, "CurrencyCode": "INR"}) is None
    assert find_money({"CurrencyAmount": "abc", "CurrencyCode": "INR"}) is None
    assert find_money([1, 2]) is None


def test_get_amount_type_order():
    """Test the first non-empty type field wins."""
    assert get_amount_type({"FeeType": "Commission", "ChargeType": "Principal"}) == "Principal"
    assert get_amount_type({"ChargeType": " ", "FeeType": "Commission"}) == "Commission"
    assert get_amount_type({}) is None


def test_extract_amounts_descriptions():
    """Test nested money gets the nearest named parent key as description."""
    event = {
        "TotalAmount": {"CurrencyAmount": -60, "CurrencyCode": "INR"},
        "ItemFeeList": [
            {"FeeType": "Commission", "FeeAmount": {"CurrencyAmount": -10, "CurrencyCode": "INR"}},
        ],
    }

    entries = extract_amounts(event, "CouponPaymentEventList")

    assert [(e["amount_description"], e["amount_type"], e["amount"]) for e in entries] == [
        ("TotalAmount", None, Decimal("-60")),
        ("ItemFeeList", "Commission", Decimal("-10")),
    ]
    assert entries[1]["field_name"] == "FeeAmount"


def test_normalize_financial_events(financial_events_payload):
    """Test one entry per monetary sub-field, event type from the list name."""
    entries = normalize_financial_events(financial_events_payload)

    assert len(entries) == 6
    assert {e.event_type for e in entries} == {"Shipment", "Refund", "ServiceFee", "CouponPayment"}
    shipment = [e for e in entries if e.event_type == "Shipment"]
    assert [e.amount_type for e in shipment] == ["Principal", "Tax", "Commission"]
    assert shipment[0].amazon_order_id == "402-1111111-1111111"
    assert shipment[0].posted_at is not None
    assert all(e.event_group_id == "unknown" for e in entries)


def test_normalize_ignores_non_event_lists():
    """Test keys not ending in EventList are skipped."""
    payload = {
        "NextToken": "x",
        "Summary": [{"Total": {"CurrencyAmount": 1, "CurrencyCode": "INR"}}],
        "ShipmentEventList": [{"Amount": {"CurrencyAmount": 1, "CurrencyCode": "INR"}}],
    }
    assert len(normalize_financial_events(payload, event_group_id="grp")) == 1
    assert normalize_financial_events(payload, event_group_id="grp")[0].event_group_id == "grp"


def test_breakdown_key_defaults():
    assert make_entry().breakdown_key == "Unknown • Uncategorized"
    assert make_entry(amount_type="Principal", description="ItemChargeList").breakdown_key == (
        "Principal • ItemChargeList"
    )


@pytest.mark.parametrize("entry,bucket,rule", [
    # Promotion echoes beat everything
    (make_entry("CouponPayment", field_name="TotalAmount", description="TotalAmount"), Bucket.EXCLUDED,
     "promotion_echo"),
    (make_entry("Shipment", description="PromotionMetadata"), Bucket.EXCLUDED, "promotion_echo"),
    # Withholding keywords beat the event list
    (make_entry("Shipment", amount_type="TDS"), Bucket.WITHHOLDINGS, "withholding_keyword"),
    (make_entry("Adjustment", amount_type="TCS-IGST"), Bucket.WITHHOLDINGS, "withholding_keyword"),
    # Event list exact match beats keywords
    (make_entry("Shipment", amount_type="Commission"), Bucket.REVENUE, "event_list_shipment"),
    (make_entry("Refund", amount_type="Principal"), Bucket.REFUNDS, "event_list_refund"),
    (make_entry("ServiceFee", amount_type="Subscription"), Bucket.FEES, "event_list_servicefee"),
    (make_entry("Chargeback", amount_type="Principal"), Bucket.OTHER_ADJUSTMENTS, "event_list_chargeback"),
    # Refund vocabulary beats charge vocabulary
    (make_entry("Retrocharge", amount_type="ShippingChargeReversal"), Bucket.REFUNDS, "refund_keyword"),
    (make_entry("ProductAdsPayment", amount_type="Advertising"), Bucket.FEES, "charge_keyword"),
    (make_entry("Mystery", amount_type="GiftWrap", amount="5"), Bucket.REVENUE, "revenue_keyword"),
])
def test_classification_precedence(entry, bucket, rule):
    """Test the ordered rule table."""
    result = classify(entry)
    assert result.bucket == bucket
    assert result.rule == rule
    assert result.heuristic is False


@pytest.mark.parametrize("amount,bucket", [("-3", Bucket.FEES), ("3", Bucket.REVENUE), ("0", Bucket.REVENUE)])
def test_sign_heuristic(amount, bucket):
    """Test unmatched entries fall back to the amount sign."""
    result = classify(make_entry("Mystery", amount_type="Xyz", description="Abc", amount=amount))
    assert result.bucket == bucket
    assert result.heuristic is True
