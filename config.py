import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        auth_token_max_age_secs: int = 3600,
        gemini_api_key: Optional[str] = None,
        gemini_model: str = "gemini-1.5-flash",
        gemini_timeout_secs: float = 30,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        mail_from: str = "Finance Platform <reports@localhost>",
        rate_limit_capacity: int = 10,
        rate_limit_refill: int = 10,
        rate_limit_interval_secs: int = 3600,
        recurring_throttle_limit: int = 10,
        recurring_throttle_period_secs: int = 60,
        event_max_attempts: int = 3,
        event_backoff_cap_secs: float = 30,
        budget_alert_threshold: int = 80,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.auth_token_max_age_secs = auth_token_max_age_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.gemini_timeout_secs = gemini_timeout_secs
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.mail_from = mail_from
        self.rate_limit_capacity = rate_limit_capacity
        self.rate_limit_refill = rate_limit_refill
        self.rate_limit_interval_secs = rate_limit_interval_secs
        self.recurring_throttle_limit = recurring_throttle_limit
        self.recurring_throttle_period_secs = recurring_throttle_period_secs
        self.event_max_attempts = event_max_attempts
        self.event_backoff_cap_secs = event_backoff_cap_secs
        self.budget_alert_threshold = budget_alert_threshold


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "finance.db"
        database_url = f"sqlite:///{default_db}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("FINANCE_TIMEZONE", "UTC"),
        auth_secret=os.getenv(
            "FINANCE_AUTH_SECRET",
            "5d0f7c1be4a94a7e8f2b6c3d9e1a4b7c0f3e6d9a2c5b8e1f4a7d0c3b6e9f2a5d",
        ),
        auth_token_max_age_secs=int(os.getenv("FINANCE_AUTH_TOKEN_MAX_AGE_SECS", "3600")),
        gemini_api_key=os.getenv("FINANCE_GEMINI_API_KEY") or None,
        gemini_model=os.getenv("FINANCE_GEMINI_MODEL", "gemini-1.5-flash"),
        gemini_timeout_secs=float(os.getenv("FINANCE_GEMINI_TIMEOUT_SECS", "30")),
        smtp_host=os.getenv("FINANCE_SMTP_HOST") or None,
        smtp_port=int(os.getenv("FINANCE_SMTP_PORT", "587")),
        smtp_username=os.getenv("FINANCE_SMTP_USERNAME") or None,
        smtp_password=os.getenv("FINANCE_SMTP_PASSWORD") or None,
        mail_from=os.getenv(
            "FINANCE_MAIL_FROM", "Finance Platform <reports@localhost>"
        ),
        rate_limit_capacity=int(os.getenv("FINANCE_RATE_LIMIT_CAPACITY", "10")),
        rate_limit_refill=int(os.getenv("FINANCE_RATE_LIMIT_REFILL", "10")),
        rate_limit_interval_secs=int(
            os.getenv("FINANCE_RATE_LIMIT_INTERVAL_SECS", "3600")
        ),
        recurring_throttle_limit=int(
            os.getenv("FINANCE_RECURRING_THROTTLE_LIMIT", "10")
        ),
        recurring_throttle_period_secs=int(
            os.getenv("FINANCE_RECURRING_THROTTLE_PERIOD_SECS", "60")
        ),
        event_max_attempts=int(os.getenv("FINANCE_EVENT_MAX_ATTEMPTS", "3")),
        event_backoff_cap_secs=float(os.getenv("FINANCE_EVENT_BACKOFF_CAP_SECS", "30")),
        budget_alert_threshold=int(os.getenv("FINANCE_BUDGET_ALERT_THRESHOLD", "80")),
    )
