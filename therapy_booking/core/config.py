import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./therapy_booking.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

SLOT_LOCK_TTL_SECONDS = int(os.getenv("SLOT_LOCK_TTL_SECONDS", "300"))
LOCK_RENEWAL_RATIO = float(os.getenv("LOCK_RENEWAL_RATIO", "0.8"))
LOCK_PURGE_INTERVAL_SECONDS = int(os.getenv("LOCK_PURGE_INTERVAL_SECONDS", "300"))

MIN_BOOKING_NOTICE_MINUTES = int(os.getenv("MIN_BOOKING_NOTICE_MINUTES", "60"))
BOOKING_WINDOW_DAYS = int(os.getenv("BOOKING_WINDOW_DAYS", "60"))
DEFAULT_SESSION_MINUTES = int(os.getenv("DEFAULT_SESSION_MINUTES", "60"))

STORAGE_RETRY_ATTEMPTS = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "3"))
STORAGE_RETRY_BASE_DELAY = float(os.getenv("STORAGE_RETRY_BASE_DELAY", "0.2"))
STORAGE_RETRY_MAX_DELAY = float(os.getenv("STORAGE_RETRY_MAX_DELAY", "2.0"))
RENEWAL_RETRY_ATTEMPTS = int(os.getenv("RENEWAL_RETRY_ATTEMPTS", "5"))

SUBSCRIPTION_QUEUE_SIZE = int(os.getenv("SUBSCRIPTION_QUEUE_SIZE", "256"))

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173"))

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if not 0 < LOCK_RENEWAL_RATIO < 1:
        raise RuntimeError("LOCK_RENEWAL_RATIO must be between 0 and 1 so renewals land before the lock expires.")
    if SLOT_LOCK_TTL_SECONDS <= 0:
        raise RuntimeError("SLOT_LOCK_TTL_SECONDS must be positive.")
    if LOCK_PURGE_INTERVAL_SECONDS <= 0:
        raise RuntimeError("LOCK_PURGE_INTERVAL_SECONDS must be positive.")
