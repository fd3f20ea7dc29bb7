from decimal import Decimal
from typing import Optional
import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _strip_url(v: str) -> str:
    return (v or "").strip().rstrip("/")


class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./library_portal.db")
    secret_key: str = os.getenv("SECRET_KEY", "")
    algorithm: str = "HS256"
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

    admin_email: Optional[str] = os.getenv("ADMIN_EMAIL") or None
    admin_password: Optional[str] = os.getenv("ADMIN_PASSWORD") or None

    daily_fine_rate: Decimal = Decimal(os.getenv("DAILY_FINE_RATE", "10"))
    loan_days: int = int(os.getenv("LOAN_DAYS", "14"))
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "3"))

    resend_api_key: str = os.getenv("RESEND_API_KEY", "")
    resend_base_url: str = _strip_url(os.getenv("RESEND_BASE_URL", "https://api.resend.com"))
    reminder_from: str = os.getenv("REMINDER_FROM", "Library <notifications@yourdomain.com>")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def get_settings() -> Settings:
    return settings
