import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        cache_ttl_secs: int,
        rollover_enabled: bool,
        rollover_max_catch_up_months: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.cache_ttl_secs = cache_ttl_secs
        self.rollover_enabled = rollover_enabled
        self.rollover_max_catch_up_months = rollover_max_catch_up_months


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SUBTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "subscriptions.db"
    database_url = os.getenv("SUBTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SUBTRACK_TIMEZONE", "Asia/Tokyo")
    cache_ttl_secs = int(os.getenv("SUBTRACK_CACHE_TTL_SECS", "3600"))
    rollover_enabled = _env_flag("SUBTRACK_ROLLOVER_ENABLED", True)
    rollover_max_catch_up_months = int(
        os.getenv("SUBTRACK_ROLLOVER_MAX_CATCH_UP_MONTHS", "24")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        cache_ttl_secs=cache_ttl_secs,
        rollover_enabled=rollover_enabled,
        rollover_max_catch_up_months=rollover_max_catch_up_months,
    )
