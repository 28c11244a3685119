from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: list[str] | None = None) -> list[str]:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return list(default or [])
    return [x.strip() for x in raw.split(",") if x.strip()]


class Config:
    """
    Process configuration, read once from the environment at app creation.

    `.env` files are loaded by `create_app()` before this is instantiated.
    """

    def __init__(self):
        self.APP_ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.APP_ENV in {"production", "prod"}
        self.APP_VERSION = _env_str("APP_VERSION", "1.0.0")
        self.APP_TIMEZONE = _env_str("APP_TIMEZONE", "Asia/Kolkata")

        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5000)
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./onboarding.db")
        self.ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", ["*"])

        self.FRONTEND_URL = _env_str("FRONTEND_URL", "http://localhost:5173").rstrip("/")
        self.API_URL = _env_str("API_URL", "http://localhost:5000/api").rstrip("/")

        self.UPLOAD_DIR = _env_str("UPLOAD_DIR", "./uploads")
        self.MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 5 * 1024 * 1024)

        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 7 * 24 * 60))
        self.APPROVAL_TOKEN_TTL_DAYS = max(1, _env_int("APPROVAL_TOKEN_TTL_DAYS", 7))
        self.EXPORT_LINK_TTL_HOURS = max(1, _env_int("EXPORT_LINK_TTL_HOURS", 24))

        self.OTP_TTL_SECONDS = max(30, _env_int("OTP_TTL_SECONDS", 300))
        self.OTP_RESEND_SECONDS = max(0, _env_int("OTP_RESEND_SECONDS", 60))
        self.OTP_MAX_ATTEMPTS = max(1, _env_int("OTP_MAX_ATTEMPTS", 3))

        self.TRAINING_TEAM_EMAIL = _env_str("TRAINING_TEAM_EMAIL", "training@burgsingh.com")

        self.SMTP_HOST = _env_str("SMTP_HOST", "smtp.gmail.com")
        self.SMTP_PORT = _env_int("SMTP_PORT", 587)
        self.SMTP_USER = _env_str("SMTP_USER")
        self.SMTP_PASSWORD = _env_str("SMTP_PASSWORD")
        self.MAIL_FROM = _env_str("MAIL_FROM", self.SMTP_USER)

        self.SMS_API_URL = _env_str("SMS_API_URL", "https://dvhosting.in/api-sms-v3.php")
        self.SMS_API_KEY = _env_str("SMS_API_KEY")

        self.LMS_API_URL = _env_str("LMS_API_URL").rstrip("/")
        self.LMS_API_KEY = _env_str("LMS_API_KEY")

        self.KYC_BASE_URL = _env_str("KYC_BASE_URL", "https://sandbox.surepass.app").rstrip("/")
        self.KYC_API_TOKEN = _env_str("KYC_API_TOKEN")

        self.NOTIFY_ASYNC = _env_bool("NOTIFY_ASYNC", False)
        self.REDIS_URL = _env_str("REDIS_URL")

        self.HTTP_TIMEOUT_SECONDS = max(1, _env_int("HTTP_TIMEOUT_SECONDS", 30))

    @property
    def sms_configured(self) -> bool:
        return bool(self.SMS_API_KEY)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_USER and self.SMTP_PASSWORD)

    @property
    def lms_configured(self) -> bool:
        return bool(self.LMS_API_URL and self.LMS_API_KEY)

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required")
        if self.IS_PRODUCTION and (not self.ALLOWED_ORIGINS or "*" in self.ALLOWED_ORIGINS):
            raise RuntimeError("ALLOWED_ORIGINS must list explicit origins in production")
