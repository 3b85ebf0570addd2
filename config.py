import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _csv(value: str):
    return frozenset(part.strip() for part in value.split(",") if part.strip())


class Settings:
    """
    Process-wide settings read from the environment (and .env if present).
    Construct once in main.create_app() and pass it to the components.
    """

    def __init__(self, **overrides):
        # Database
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookings.db")

        # Stripe
        self.STRIPE_API_KEY = os.getenv("STRIPE_API_KEY")
        self.STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.CURRENCY = os.getenv("CURRENCY", "jpy")
        self.SITE_URL = os.getenv("SITE_URL", "http://localhost:3000")

        # Auth
        self.JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "CHANGE_THIS_SECRET_IN_PRODUCTION")
        self.JWT_ALGORITHM = "HS256"

        # Email (Brevo)
        self.BREVO_API_KEY = os.getenv("BREVO_API_KEY")
        self.BREVO_API_URL = os.getenv("BREVO_API_URL", "https://api.brevo.com/v3/smtp/email")
        self.EMAIL_FROM = os.getenv("EMAIL_FROM", "bookings@example.com")
        self.EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Bookings")
        self.ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")

        # Notification dispatch
        self.NOTIFY_DISABLED = _csv(os.getenv("NOTIFY_DISABLED", ""))
        self.NOTIFY_MAX_WORKERS = int(os.getenv("NOTIFY_MAX_WORKERS", "4"))
        self.NOTIFY_MAX_PENDING = int(os.getenv("NOTIFY_MAX_PENDING", "100"))
        self.NOTIFY_MAX_ATTEMPTS = int(os.getenv("NOTIFY_MAX_ATTEMPTS", "3"))
        self.NOTIFY_BACKOFF_SECONDS = float(os.getenv("NOTIFY_BACKOFF_SECONDS", "1.0"))
        self.NOTIFY_WAIT_SECONDS = float(os.getenv("NOTIFY_WAIT_SECONDS", "2.0"))

        # Outbound calls
        self.HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
        self.GATEWAY_MAX_ATTEMPTS = int(os.getenv("GATEWAY_MAX_ATTEMPTS", "3"))
        self.GATEWAY_BACKOFF_SECONDS = float(os.getenv("GATEWAY_BACKOFF_SECONDS", "0.5"))

        # Booking transactions
        self.TXN_MAX_ATTEMPTS = int(os.getenv("TXN_MAX_ATTEMPTS", "5"))
        self.REFERENCE_CODE_ATTEMPTS = int(os.getenv("REFERENCE_CODE_ATTEMPTS", "10"))

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
