import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./finledger.db")
    frontend_origin: str = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
    default_currency: str = os.getenv("DEFAULT_CURRENCY", "USD")
    fx_base_currency: str = os.getenv("FX_BASE_CURRENCY", "USD")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    brevo_api_key: str = os.getenv("BREVO_API_KEY", "")
    sender_email: str = os.getenv("BREVO_SENDER_EMAIL", "noreply@yourfinanceapp.com")
    sender_name: str = os.getenv("BREVO_SENDER_NAME", "Your Finance App")
    mail_timeout_seconds: float = _env_float("MAIL_TIMEOUT_SECONDS", 10.0)
    mail_send_delay_seconds: float = _env_float("MAIL_SEND_DELAY_SECONDS", 0.2)

    execution_daily_time: str = os.getenv("EXECUTION_DAILY_TIME", "00:05")
    execution_timezone: str = os.getenv("EXECUTION_TIMEZONE", "Europe/Bucharest")
    execution_enabled: bool = _env_bool("EXECUTION_ENABLED", True)

    notification_daily_time: str = os.getenv("NOTIFICATION_DAILY_TIME", "08:00")
    notification_timezone: str = os.getenv("NOTIFICATION_TIMEZONE", "Europe/Bucharest")
    notification_enabled: bool = _env_bool("NOTIFICATION_ENABLED", True)


settings = Settings()
