import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        rollover_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.rollover_enabled = rollover_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ENVELOPES_DATA_DIR", "./data")).resolve()
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
    default_db = data_dir / "envelopes.db"
    database_url = os.getenv("ENVELOPES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("ENVELOPES_TIMEZONE", "Europe/Berlin")
    log_level = os.getenv("ENVELOPES_LOG_LEVEL", "INFO").upper()
    rollover_enabled = _env_flag("ENVELOPES_ROLLOVER_ENABLED", True)
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        rollover_enabled=rollover_enabled,
    )
