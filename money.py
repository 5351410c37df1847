from decimal import Decimal, InvalidOperation

from errors import ValidationError


CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£"}


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    """Parse a user-entered amount ("9,99", "1.234,50", "€12") into minor units."""
    clean = value.strip()
    for symbol in CURRENCY_SYMBOLS.values():
        clean = clean.replace(symbol, "")
    clean = clean.replace(" ", "").replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents == 0:
        raise ValidationError("Amount must not be zero")
    if cents < 0 and not allow_negative:
        raise ValidationError("Amount must be positive")
    return cents


def format_amount(cents: int, currency: str, *, include_cents: bool = True) -> str:
    sign = "-" if cents < 0 else ""
    if include_cents:
        body = f"{abs(cents) / 100:,.2f}".replace(",", " ").replace(".", ",")
    else:
        body = f"{abs(cents) / 100:,.0f}".replace(",", " ")
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol:
        return f"{sign}{body} {symbol}"
    return f"{sign}{body} {currency.upper()}"
