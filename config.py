import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        ledger_currency: str,
        alert_threshold: Decimal,
        recurring_interval_minutes: int,
        max_catch_up: int,
        self_heal_on_load: bool,
        fx_provider: str,
        fx_markup_bps: int,
        fx_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.ledger_currency = ledger_currency
        self.alert_threshold = alert_threshold
        self.recurring_interval_minutes = recurring_interval_minutes
        self.max_catch_up = max_catch_up
        self.self_heal_on_load = self_heal_on_load
        self.fx_provider = fx_provider
        self.fx_markup_bps = fx_markup_bps
        self.fx_timeout_secs = fx_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("EXPENSES_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "expenses.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Berlin")
    ledger_currency = os.getenv("EXPENSES_LEDGER_CURRENCY", "EUR").strip().upper()
    alert_threshold = Decimal(os.getenv("EXPENSES_ALERT_THRESHOLD", "0.8"))
    recurring_interval_minutes = int(
        os.getenv("EXPENSES_RECURRING_INTERVAL_MINUTES", "60")
    )
    max_catch_up = int(os.getenv("EXPENSES_MAX_CATCH_UP", "1000"))
    self_heal_on_load = _env_flag("EXPENSES_SELF_HEAL_ON_LOAD", True)
    fx_provider = os.getenv("EXPENSES_FX_PROVIDER", "frankfurter")
    fx_markup_bps = int(os.getenv("EXPENSES_FX_MARKUP_BPS", "0"))
    fx_timeout_secs = float(os.getenv("EXPENSES_FX_TIMEOUT_SECS", "5"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        ledger_currency=ledger_currency,
        alert_threshold=alert_threshold,
        recurring_interval_minutes=recurring_interval_minutes,
        max_catch_up=max_catch_up,
        self_heal_on_load=self_heal_on_load,
        fx_provider=fx_provider,
        fx_markup_bps=fx_markup_bps,
        fx_timeout_secs=fx_timeout_secs,
    )
