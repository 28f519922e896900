import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        apply_timeout_secs: Optional[float],
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.apply_timeout_secs = apply_timeout_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("TXRULES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    return float(value)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "rules.db"
    database_url = os.getenv("TXRULES_DATABASE_URL", f"sqlite:///{default_db}")
    apply_timeout_secs = _optional_float(os.getenv("TXRULES_APPLY_TIMEOUT_SECS"))
    log_level = os.getenv("TXRULES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        apply_timeout_secs=apply_timeout_secs,
        log_level=log_level,
    )
