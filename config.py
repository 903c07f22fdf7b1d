import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        max_exported_rows: int,
        ledger_check_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.max_exported_rows = max_exported_rows
        self.ledger_check_hours = ledger_check_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEYMANAGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "moneymanager.db"
    database_url = os.getenv("MONEYMANAGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONEYMANAGER_TIMEZONE", "Europe/Moscow")
    max_exported_rows = int(os.getenv("MONEYMANAGER_MAX_EXPORTED_ROWS", "10000"))
    ledger_check_hours = int(os.getenv("MONEYMANAGER_LEDGER_CHECK_HOURS", "24"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        max_exported_rows=max_exported_rows,
        ledger_check_hours=ledger_check_hours,
    )
