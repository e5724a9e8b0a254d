from decimal import ROUND_HALF_UP, Decimal


def line_total_cents(quantity: float, unit_price_cents: int) -> int:
    # str() keeps 1.1 as Decimal("1.1") instead of its binary approximation
    qty = Decimal(str(quantity))
    return int((qty * unit_price_cents).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole:,}.{frac:02d}"
