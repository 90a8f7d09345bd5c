"""Pure helpers: phone formatting, parsers, densities and currency conversion."""
from datetime import date

import pytest

from app.polimaks.modules.clients.service import convert_to_display_currency
from app.polimaks.modules.mixtures.service import calculate_totals, density_for, liters_to_kg
from app.polimaks.modules.inventory.models import Solvent
from app.polimaks.utils import (
    current_month,
    day_before,
    format_phone,
    parse_date,
    parse_float,
    parse_int,
    parse_month,
    raw_phone,
    validate_date_range,
    validate_phone,
)


def test_raw_phone_keeps_first_nine_digits():
    assert raw_phone("+998 (90) 123-45-67") == "998901234"
    assert raw_phone("90 123-45-67") == "901234567"
    assert raw_phone(None) == ""


def test_format_phone_groups_digits():
    assert format_phone("901234567") == "90 123-45-67"
    assert format_phone("9012") == "90 12"
    assert format_phone("") == ""


def test_validate_phone():
    assert validate_phone("90 123 45 67") is None
    assert validate_phone("12345") == "Phone must have 9 digits."
    assert validate_phone("", required=False) is None
    assert validate_phone("") is not None


def test_lenient_parsers():
    assert parse_date("2024-03-05") == date(2024, 3, 5)
    assert parse_date("2024-03-05T10:00:00Z") == date(2024, 3, 5)
    assert parse_date("nope") is None
    assert parse_month("2024-13") is None
    assert parse_month("2024-02-11") == "2024-02"
    assert parse_float("1 234,5") == 1234.5
    assert parse_float(True) is None
    assert parse_float("nan") is None
    assert parse_float("Infinity") is None
    assert parse_float(float("inf")) is None
    assert parse_float(10**400) is None
    assert parse_int("7.9") == 7


def test_date_helpers():
    assert validate_date_range(date(2024, 1, 2), date(2024, 1, 1)) == "End date cannot be before start date."
    assert validate_date_range(date(2024, 1, 1), None) is None
    assert day_before(date(2024, 3, 1)) == date(2024, 2, 29)
    assert current_month(date(2024, 7, 9)) == "2024-07"


def test_solvent_density():
    assert density_for("eaf") == 0.78
    assert density_for("unknown") == 0.8
    assert liters_to_kg(10, "metoksil") == pytest.approx(8.9)


def test_mixture_totals_price_per_liter_and_kg():
    eaf = Solvent(type="eaf", price_per_liter=2.0, price_currency="USD")
    etilin = Solvent(type="etilin", price_per_liter=4.0, price_currency="USD")
    totals = calculate_totals([(eaf, 10.0), (etilin, 10.0)])
    assert totals["total_liter"] == pytest.approx(20.0)
    assert totals["total_kg"] == pytest.approx(7.8 + 8.8)
    assert totals["total_cost"] == pytest.approx(60.0)
    assert totals["price_per_liter"] == pytest.approx(3.0)
    assert totals["price_per_kg"] == pytest.approx(60.0 / 16.6)


def test_currency_conversion_goes_through_uzs():
    assert convert_to_display_currency(2, "USD", "UZS") == 23000
    assert convert_to_display_currency(23000, "UZS", "USD") == pytest.approx(2)
    assert convert_to_display_currency(1, "USD", "UZS", manual_rate=12000) == 12000
    assert convert_to_display_currency(500, "UZS", "UZS") == 500
