from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from typing import Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


class FxRateService:
    """Display-only conversion; ledger amounts are never converted."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def quote_for_date(self, base: str, quote: str, on_date: date) -> FxQuote:
        provider = (self.settings.fx_provider or "frankfurter").lower()
        if provider != "frankfurter":
            raise ValueError(f"Unsupported FX provider: {provider}")

        fx = _fetch_frankfurter_quote(
            base.upper(), quote.upper(), on_date, timeout=self.settings.fx_timeout_secs
        )
        markup_bps = self.settings.fx_markup_bps
        if markup_bps:
            factor = Decimal("1") - (Decimal(markup_bps) / Decimal("10000"))
            fx = FxQuote(
                provider=fx.provider,
                base=fx.base,
                quote=fx.quote,
                rate=(fx.rate * factor),
                rate_date=fx.rate_date,
                fetched_at=fx.fetched_at,
            )
        return fx

    def convert_for_display(
        self, cents: int, from_currency: str, to_currency: str, on_date: date
    ) -> tuple[int, Optional[FxQuote]]:
        if from_currency.upper() == to_currency.upper():
            return cents, None
        fx = self.quote_for_date(from_currency, to_currency, on_date)
        converted = (Decimal(cents) * fx.rate).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(converted), fx


@lru_cache(maxsize=2048)
def _fetch_frankfurter_quote(
    base: str, quote: str, on_date: date, *, timeout: float
) -> FxQuote:
    url = f"https://api.frankfurter.app/{on_date.isoformat()}?from={base}&to={quote}"
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError(
            f"Failed to fetch {base}/{quote} rate from Frankfurter for {on_date}"
        ) from exc

    try:
        rate_value = payload["rates"][quote]
        effective_date = date.fromisoformat(payload["date"])
    except Exception as exc:
        raise RuntimeError("Unexpected FX provider response") from exc

    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=Decimal(str(rate_value)),
        rate_date=effective_date,
        fetched_at=fetched_at,
    )
