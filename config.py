import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes"}


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Public URLs ---
    APP_URL = os.environ.get("APP_URL", "https://painoptix.com")

    # --- Check-in tokens ---
    CHECKINS_TOKEN_SECRET = os.environ.get("CHECKINS_TOKEN_SECRET", "")
    CHECKINS_TOKEN_TTL_SECONDS = int(os.environ.get("CHECKINS_TOKEN_TTL_SECONDS", str(7 * 24 * 60 * 60)))

    # --- Dispatch ---
    CHECKINS_DISPATCH_TOKEN = os.environ.get("CHECKINS_DISPATCH_TOKEN", "")
    CHECKINS_ENABLED = _flag("CHECKINS_ENABLED", "1")
    CHECKINS_DAILY = _flag("CHECKINS_DAILY")
    CHECKINS_SANDBOX = _flag("CHECKINS_SANDBOX")
    CHECKINS_SEND_TZ = os.environ.get("CHECKINS_SEND_TZ", "America/New_York")
    CHECKINS_SEND_WINDOW = os.environ.get("CHECKINS_SEND_WINDOW", "")  # e.g. "08:00-20:00"
    CHECKINS_START_AT = os.environ.get("CHECKINS_START_AT", "")  # ISO-8601
    CHECKINS_DISPATCH_INTERVAL = float(os.environ.get("CHECKINS_DISPATCH_INTERVAL", "300"))
    CHECKINS_DISPATCH_LIMIT = int(os.environ.get("CHECKINS_DISPATCH_LIMIT", "100"))

    # --- Twilio (SMS) ---
    TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER = os.environ.get("TWILIO_FROM_NUMBER")
    INBOUND_TIMEOUT_SECONDS = float(os.environ.get("INBOUND_TIMEOUT_SECONDS", "8"))

    # --- SendGrid (email) ---
    SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "checkins@painoptix.com")
    EMAIL_TIMEOUT = int(os.environ.get("EMAIL_TIMEOUT", "10"))

    # --- Red-flag escalation ---
    ALERT_WEBHOOK = os.environ.get("ALERT_WEBHOOK")

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

settings = Settings()
