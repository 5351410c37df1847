from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

import fx_rates
from config import Settings
from errors import ValidationError
from fx_rates import FxQuote, FxRateService
from money import format_amount, parse_amount


def _settings(markup_bps: int = 0) -> Settings:
    return Settings(
        database_url="sqlite://",
        timezone="Europe/Berlin",
        ledger_currency="EUR",
        alert_threshold=Decimal("0.8"),
        recurring_interval_minutes=60,
        max_catch_up=1000,
        self_heal_on_load=True,
        fx_provider="frankfurter",
        fx_markup_bps=markup_bps,
        fx_timeout_secs=5.0,
    )


def test_parse_amount_formats():
    assert parse_amount("9,99") == 999
    assert parse_amount("9.99") == 999
    assert parse_amount("1.234,50") == 123450
    assert parse_amount("€12") == 1200
    assert parse_amount("-5", allow_negative=True) == -500
    with pytest.raises(ValidationError):
        parse_amount("abc")
    with pytest.raises(ValidationError):
        parse_amount("-5")


def test_parse_amount_rejects_zero():
    with pytest.raises(ValidationError):
        parse_amount("0")
    with pytest.raises(ValidationError):
        parse_amount("0.004")
    with pytest.raises(ValidationError):
        parse_amount("0,00", allow_negative=True)


def test_format_amount():
    assert format_amount(999, "EUR") == "9,99 €"
    assert format_amount(123450, "eur") == "1 234,50 €"
    assert format_amount(999, "CHF") == "9,99 CHF"
    assert format_amount(-250, "USD") == "-2,50 $"
    assert format_amount(123400, "USD", include_cents=False) == "1 234 $"


def _fake_quote(base, quote, on_date, *, timeout):
    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=Decimal("1.1"),
        rate_date=on_date,
        fetched_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


def test_convert_for_display(monkeypatch):
    monkeypatch.setattr(fx_rates, "_fetch_frankfurter_quote", _fake_quote)
    service = FxRateService(_settings())

    cents, quote = service.convert_for_display(1000, "EUR", "usd", date(2025, 3, 3))

    assert cents == 1100
    assert quote.quote == "USD"
    assert quote.rate_date == date(2025, 3, 3)
    assert service.convert_for_display(1000, "EUR", "eur", date(2025, 3, 3)) == (1000, None)


def test_markup_lowers_rate(monkeypatch):
    monkeypatch.setattr(fx_rates, "_fetch_frankfurter_quote", _fake_quote)
    service = FxRateService(_settings(markup_bps=100))

    quote = service.quote_for_date("EUR", "USD", date(2025, 3, 3))

    assert quote.rate == Decimal("1.1") * Decimal("0.99")
