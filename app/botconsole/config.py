import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    worktool_default_base_url: str
    worktool_timeout_seconds: int
    alert_webhook_timeout_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///botconsole.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        worktool_default_base_url=_getenv("WORKTOOL_DEFAULT_BASE_URL", "https://api.worktool.ymdyes.cn"),
        worktool_timeout_seconds=_getenv_int("WORKTOOL_TIMEOUT_SECONDS", 10),
        alert_webhook_timeout_seconds=_getenv_int("ALERT_WEBHOOK_TIMEOUT_SECONDS", 5),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "WORKTOOL_DEFAULT_BASE_URL": s.worktool_default_base_url,
        "WORKTOOL_TIMEOUT_SECONDS": s.worktool_timeout_seconds,
        "ALERT_WEBHOOK_TIMEOUT_SECONDS": s.alert_webhook_timeout_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # CSV imports only (5MB)
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
        "JSON_SORT_KEYS": False,
    }
