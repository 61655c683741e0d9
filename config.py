import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        sweep_hour: int,
        sweep_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.sweep_hour = sweep_hour
        self.sweep_minute = sweep_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "UTC")
    default_currency = os.getenv("FINTRACK_DEFAULT_CURRENCY", "INR").upper()
    sweep_hour = int(os.getenv("FINTRACK_SWEEP_HOUR", "1"))
    sweep_minute = int(os.getenv("FINTRACK_SWEEP_MINUTE", "0"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        sweep_hour=sweep_hour,
        sweep_minute=sweep_minute,
    )
