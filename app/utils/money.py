from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def to_cents(amount) -> int:
    """Dollars (str, int, float or Decimal) to integer cents, half-up."""
    try:
        d = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"not a monetary amount: {amount!r}")
    if not d.is_finite():
        raise ValueError(f"not a monetary amount: {amount!r}")
    return int((d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(cents: int) -> str:
    """1500 -> "15.00" """
    sign = "-" if cents < 0 else ""
    cents = abs(int(cents))
    return f"{sign}{cents // 100}.{cents % 100:02d}"
