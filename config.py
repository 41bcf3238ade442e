import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        log_level: str,
        default_valuation: str,
    ) -> None:
        self.database_url = database_url
        self.log_level = log_level
        self.default_valuation = default_valuation


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    default_valuation = os.getenv("LEDGER_DEFAULT_VALUATION", "zillow").lower()
    return Settings(
        database_url=database_url,
        log_level=log_level,
        default_valuation=default_valuation,
    )
