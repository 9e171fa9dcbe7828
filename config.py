import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        trend_window_months: int,
        comparison_window_days: int,
        top_plans_limit: int,
        scheduler_enabled: bool,
        reconcile_interval_hours: int,
        db_busy_timeout_ms: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.trend_window_months = trend_window_months
        self.comparison_window_days = comparison_window_days
        self.top_plans_limit = top_plans_limit
        self.scheduler_enabled = scheduler_enabled
        self.reconcile_interval_hours = reconcile_interval_hours
        self.db_busy_timeout_ms = db_busy_timeout_ms


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SAVINGS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "savings.db"
    database_url = os.getenv("SAVINGS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SAVINGS_TIMEZONE", "Africa/Nairobi")
    log_level = os.getenv("SAVINGS_LOG_LEVEL", "INFO").upper()
    trend_window_months = int(os.getenv("SAVINGS_TREND_WINDOW_MONTHS", "6"))
    comparison_window_days = int(os.getenv("SAVINGS_COMPARISON_WINDOW_DAYS", "30"))
    top_plans_limit = int(os.getenv("SAVINGS_TOP_PLANS_LIMIT", "5"))
    scheduler_enabled = _env_flag("SAVINGS_SCHEDULER_ENABLED", "1")
    reconcile_interval_hours = int(os.getenv("SAVINGS_RECONCILE_INTERVAL_HOURS", "6"))
    db_busy_timeout_ms = int(os.getenv("SAVINGS_DB_BUSY_TIMEOUT_MS", "5000"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        trend_window_months=trend_window_months,
        comparison_window_days=comparison_window_days,
        top_plans_limit=top_plans_limit,
        scheduler_enabled=scheduler_enabled,
        reconcile_interval_hours=reconcile_interval_hours,
        db_busy_timeout_ms=db_busy_timeout_ms,
    )
