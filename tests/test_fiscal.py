from datetime import date

from fiscal import current_fiscal_year, fiscal_year_by_label, resolve_fiscal_year
from money import format_amount, line_total_cents


def test_calendar_fiscal_year_uses_buddhist_era_label() -> None:
    fiscal = fiscal_year_by_label(2568, offset=543, start_month=1)
    assert fiscal.start == date(2025, 1, 1)
    assert fiscal.end == date(2025, 12, 31)
    assert current_fiscal_year(date(2025, 6, 1)) == 2568


def test_october_fiscal_year_is_labelled_by_its_closing_year() -> None:
    fiscal = fiscal_year_by_label(2568, offset=543, start_month=10)
    assert fiscal.start == date(2024, 10, 1)
    assert fiscal.end == date(2025, 9, 30)

    opening = resolve_fiscal_year(date(2024, 10, 1), offset=543, start_month=10)
    closing = resolve_fiscal_year(date(2024, 9, 30), offset=543, start_month=10)
    assert opening.year == 2568
    assert closing.year == 2567


def test_zero_offset_gives_gregorian_labels() -> None:
    assert resolve_fiscal_year(date(2025, 12, 31), offset=0, start_month=1).year == 2025


def test_line_total_rounds_half_up() -> None:
    assert line_total_cents(2, 5_000) == 10_000
    assert line_total_cents(1.1, 999) == 1_099
    assert line_total_cents(0.5, 3) == 2


def test_format_amount() -> None:
    assert format_amount(30_000) == "300.00"
    assert format_amount(100_000) == "1,000.00"
    assert format_amount(-150) == "-1.50"
    assert format_amount(5) == "0.05"
