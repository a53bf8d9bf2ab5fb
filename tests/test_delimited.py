"""Tests for delimited report parsing."""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from marketsync.errors import ParseError
from marketsync.parsing.delimited import (
    detect_delimiter,
    detect_header_row,
    normalize_header,
    parse_amount,
    parse_date,
    parse_int,
    parse_table,
    split_rows,
)


def test_normalize_header():
    """Test headers are lowercased with punctuation dropped."""
    assert normalize_header(" Amazon-Order-ID ") == "amazonorderid"
    assert normalize_header("amount_currency") == "amountcurrency"


@pytest.mark.parametrize("text,expected", [
    ("a\tb\tc\n1\t2\t3\n", "\t"),
    ("a,b,c\n1,2,3\n", ","),
    ("a|b|c\n1|2|3\n", "|"),
    ("single\n", "\t"),
])
def test_detect_delimiter(text, expected):
    """Test the most frequent delimiter wins, tab on ties."""
    assert detect_delimiter(text) == expected


def test_split_rows_skips_blank_and_comment_rows():
    """Test blank lines and single-cell comments are dropped."""
    rows = split_rows("# generated\n\na,b\n\n1,2\n", ",")
    assert rows == [["a", "b"], ["1", "2"]]


def test_split_rows_honours_quotes():
    """Test quoted fields may contain the delimiter."""
    rows = split_rows('sku,title\nA,"Mug, blue"\n', ",")
    assert rows[1] == ["A", "Mug, blue"]


def test_detect_header_after_banner_lines():
    """Test banner and preamble rows are skipped."""
    rows = [
        ["Settlement report"],
        ["Generated", "2025-11-13"],
        ["settlement-id", "posted-date", "amount"],
        ["1", "2025-11-01", "10.00"],
    ]
    assert detect_header_row(rows, ["settlement-id", "posted-date", "amount"]) == 2


def test_detect_header_with_one_token_in_wide_row():
    """Test one matching token is enough when the row has ten or more cells."""
    wide = ["sku"] + [f"col{i}" for i in range(9)]
    narrow = ["sku", "other"]
    assert detect_header_row([["x", "y"], wide], ["sku", "asin"]) == 1
    assert detect_header_row([narrow, ["a", "b"]], ["sku", "asin"]) == 0


def test_detect_header_falls_back_to_first_multi_cell_row():
    """Test without a token match the first multi-cell row is used."""
    rows = [["only one"], ["foo", "bar"], ["1", "2"]]
    assert detect_header_row(rows, ["sku", "asin"]) == 1
    assert detect_header_row([["one"]], ["sku"]) == 0


def test_parse_table_maps_synonyms(orders_report_text):
    """Test synonym columns resolve and the banner is skipped."""
    table = parse_table(orders_report_text, "orders")

    assert table.delimiter == "\t"
    assert table.header_index == 1
    assert table.row_count == 3
    assert table.has_field("order_id")
    assert not table.has_field("order_item_id")

    first = table.rows[0]
    assert first["order_id"] == "402-1111111-1111111"
    assert first["sku"] == "SKU-A"
    assert first["item_amount"] == "1998.00"
    assert first["order_item_id"] is None


def test_parse_table_strips_bom_and_handles_csv():
    """Test a BOM-prefixed CSV parses like a clean one."""
    table = parse_table("\ufeffseller-sku,asin,afn-fulfillable-quantity\nA1,B0X,4\n", "inventory")

    assert table.delimiter == ","
    assert table.rows[0]["sku"] == "A1"
    assert table.rows[0]["available"] == "4"


def test_parse_table_empty_body():
    """Test an empty body gives an empty table."""
    table = parse_table("", "returns")
    assert table.row_count == 0
    assert table.headers == []


def test_parse_table_unknown_family():
    """Test an unknown family without synonyms is rejected."""
    with pytest.raises(ParseError):
        parse_table("a\tb\n", "listings")


def test_row_count_round_trip():
    """Test every data row after the header is kept."""
    lines = ["sku\tasin\tquantity\treturn-date"] + [f"S{i}\tB{i}\t1\t2025-11-01" for i in range(250)]
    table = parse_table("\n".join(lines), "returns")
    assert table.row_count == 250


@pytest.mark.parametrize("value,expected", [
    ("1,234.50", Decimal("1234.50")),
    ("₹ 99", Decimal("99")),
    ("-12.5", Decimal("-12.5")),
    ("", None),
    ("-", None),
    (None, None),
    ("n/a", None),
])
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


def test_parse_int_truncates():
    assert parse_int("3.9") == 3
    assert parse_int("") is None


@pytest.mark.parametrize("value,expected", [
    ("2025-11-01T10:00:00Z", datetime(2025, 11, 1, 10, tzinfo=timezone.utc)),
    ("2025-11-01", datetime(2025, 11, 1, tzinfo=timezone.utc)),
    ("2025-11-01 00:00:00 UTC", datetime(2025, 11, 1, tzinfo=timezone.utc)),
    ("01.11.2025", datetime(2025, 11, 1, tzinfo=timezone.utc)),
    ("11/01/2025", datetime(2025, 11, 1, tzinfo=timezone.utc)),
    ("not a date", None),
    ("", None),
])
def test_parse_date(value, expected):
    assert parse_date(value) == expected
