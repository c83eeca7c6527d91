import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_cookie: str,
        session_max_age_hours: int,
        warning_ratio: float,
        default_page_size: int,
        max_page_size: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_cookie = session_cookie
        self.session_max_age_hours = session_max_age_hours
        self.warning_ratio = warning_ratio
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "Europe/Berlin")
    session_secret = os.getenv(
        "BUDGETS_SESSION_SECRET",
        "5d0c8f7a1e2b4c6d9f3a8b7e6d5c4b3a2f1e0d9c8b7a6f5e4d3c2b1a0f9e8d7c",
    )
    session_cookie = os.getenv("BUDGETS_SESSION_COOKIE", "session")
    session_max_age_hours = int(os.getenv("BUDGETS_SESSION_MAX_AGE_HOURS", "24"))
    warning_ratio = float(os.getenv("BUDGETS_WARNING_RATIO", "0.8"))
    default_page_size = int(os.getenv("BUDGETS_DEFAULT_PAGE_SIZE", "20"))
    max_page_size = int(os.getenv("BUDGETS_MAX_PAGE_SIZE", "100"))
    log_level = os.getenv("BUDGETS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_cookie=session_cookie,
        session_max_age_hours=session_max_age_hours,
        warning_ratio=warning_ratio,
        default_page_size=default_page_size,
        max_page_size=max_page_size,
        log_level=log_level,
    )
