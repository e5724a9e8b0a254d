import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        fiscal_year_offset: int,
        fiscal_year_start_month: int,
        expense_revert_match: str,
        log_level: str,
        debug: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.fiscal_year_offset = fiscal_year_offset
        self.fiscal_year_start_month = fiscal_year_start_month
        self.expense_revert_match = expense_revert_match
        self.log_level = log_level
        self.debug = debug


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Asia/Bangkok")
    fiscal_year_offset = int(os.getenv("BUDGET_FISCAL_YEAR_OFFSET", "543"))
    fiscal_year_start_month = int(os.getenv("BUDGET_FISCAL_YEAR_START_MONTH", "1"))
    if not 1 <= fiscal_year_start_month <= 12:
        raise ValueError("BUDGET_FISCAL_YEAR_START_MONTH must be between 1 and 12")
    expense_revert_match = os.getenv("BUDGET_EXPENSE_REVERT_MATCH", "request_id")
    if expense_revert_match not in {"request_id", "project_prefix"}:
        raise ValueError(
            "BUDGET_EXPENSE_REVERT_MATCH must be 'request_id' or 'project_prefix'"
        )
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        fiscal_year_offset=fiscal_year_offset,
        fiscal_year_start_month=fiscal_year_start_month,
        expense_revert_match=expense_revert_match,
        log_level=log_level,
        debug=_env_flag("BUDGET_DEBUG"),
    )
