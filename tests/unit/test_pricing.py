from decimal import Decimal

import pytest

from cookieshop.services.pricing import (
    calculate_cart_total,
    calculate_item_total,
    format_price,
    from_minor_units,
    parse_price,
    to_minor_units,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "value, expected",
    [
        ("$1,234.50", Decimal("1234.50")),
        ("3.5", Decimal("3.5")),
        (4, Decimal("4")),
        (2.25, Decimal("2.25")),
        (Decimal("7.10"), Decimal("7.10")),
        ("abc", Decimal("0")),
        ("", Decimal("0")),
        (None, Decimal("0")),
        (True, Decimal("0")),
        (float("nan"), Decimal("0")),
        (["3.00"], Decimal("0")),
    ],
)
def test_parse_price(value, expected):
    assert parse_price(value) == expected


def test_to_minor_units_rounds_half_up():
    assert to_minor_units("3.50") == 350
    assert to_minor_units(Decimal("3.005")) == 301
    assert to_minor_units(Decimal("3.004")) == 300
    assert to_minor_units("not a price") == 0


def test_from_minor_units():
    assert from_minor_units(1234) == Decimal("12.34")
    assert from_minor_units(None) == Decimal("0.00")


def test_format_price():
    assert format_price("3.5") == "$3.50"
    assert format_price(None) == "$0.00"


def test_item_and_cart_totals():
    assert calculate_item_total("3.50", 3) == Decimal("10.50")
    items = [
        {"price": "3.50", "quantity": 2},
        {"price": Decimal("1.25"), "quantity": 4},
        {"price": "bad", "quantity": 10},
        {"price": "2.00"},
    ]
    assert calculate_cart_total(items) == Decimal("12.00")
    assert calculate_cart_total([]) == Decimal("0.00")
