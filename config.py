import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        session_max_age_days: int,
        session_cookie_secure: bool,
        bcrypt_rounds: int,
        max_login_attempts: int,
        lockout_minutes: int,
        smtp_host: str,
        smtp_port: int,
        smtp_username: str,
        smtp_password: str,
        mail_from: str,
        insights_api_key: str,
        insights_base_url: str,
        insights_model: str,
        insights_timeout_secs: float,
        log_level: str,
        host: str,
        port: int,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.session_max_age_days = session_max_age_days
        self.session_cookie_secure = session_cookie_secure
        self.bcrypt_rounds = bcrypt_rounds
        self.max_login_attempts = max_login_attempts
        self.lockout_minutes = lockout_minutes
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.mail_from = mail_from
        self.insights_api_key = insights_api_key
        self.insights_base_url = insights_base_url
        self.insights_model = insights_model
        self.insights_timeout_secs = insights_timeout_secs
        self.log_level = log_level
        self.host = host
        self.port = port


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINLOG_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finlog.db"
    database_url = os.getenv("FINLOG_DATABASE_URL", f"sqlite:///{default_db}")
    session_secret = os.getenv(
        "FINLOG_SESSION_SECRET",
        "3f0c9a5d7be14e26a8d1c4f09e6b2a7d5c8e1f3a9b0d4c6e2f7a8b9c0d1e2f3a",
    )
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        session_max_age_days=int(os.getenv("FINLOG_SESSION_MAX_AGE_DAYS", "30")),
        session_cookie_secure=_env_flag("FINLOG_SESSION_COOKIE_SECURE"),
        bcrypt_rounds=int(os.getenv("FINLOG_BCRYPT_ROUNDS", "12")),
        max_login_attempts=int(os.getenv("FINLOG_MAX_LOGIN_ATTEMPTS", "5")),
        lockout_minutes=int(os.getenv("FINLOG_LOCKOUT_MINUTES", "15")),
        smtp_host=os.getenv("FINLOG_SMTP_HOST", ""),
        smtp_port=int(os.getenv("FINLOG_SMTP_PORT", "587")),
        smtp_username=os.getenv("FINLOG_SMTP_USERNAME", ""),
        smtp_password=os.getenv("FINLOG_SMTP_PASSWORD", ""),
        mail_from=os.getenv("FINLOG_MAIL_FROM", "Finlog <no-reply@finlog.local>"),
        insights_api_key=os.getenv("FINLOG_INSIGHTS_API_KEY", ""),
        insights_base_url=os.getenv(
            "FINLOG_INSIGHTS_BASE_URL", "https://api.openai.com/v1"
        ),
        insights_model=os.getenv("FINLOG_INSIGHTS_MODEL", "gpt-4o"),
        insights_timeout_secs=float(os.getenv("FINLOG_INSIGHTS_TIMEOUT_SECS", "20")),
        log_level=os.getenv("FINLOG_LOG_LEVEL", "INFO").upper(),
        host=os.getenv("FINLOG_HOST", "127.0.0.1"),
        port=int(os.getenv("FINLOG_PORT", "8000")),
    )
