import logging
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./gatekeeper.db")

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
DEVICE_TOKEN_HOURS = int(os.getenv("DEVICE_TOKEN_HOURS", "8"))

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
ADMIN_TOKEN_HOURS = int(os.getenv("ADMIN_TOKEN_HOURS", "8"))
ADMIN_2FA_REQUIRED = os.getenv("ADMIN_2FA_REQUIRED", "false").lower() == "true"
ADMIN_TOTP_SECRET = os.getenv("ADMIN_TOTP_SECRET", "JBSWY3DPEHPK3PXP")
# Only relaxes the admin back-office; device tokens are always verified.
AUTH_DISABLED = os.getenv("AUTH_DISABLED", "false").lower() == "true"

IDEMPOTENCY_WINDOW_SECONDS = int(os.getenv("IDEMPOTENCY_WINDOW_SECONDS", "60"))
IDEMPOTENCY_FAIL_MODE = os.getenv("IDEMPOTENCY_FAIL_MODE", "open").lower()  # open, closed

RATE_LIMITS = {
    "device_auth": {
        "window_ms": int(os.getenv("DEVICE_AUTH_WINDOW_MS", "60000")),
        "max": int(os.getenv("DEVICE_AUTH_MAX", "5")),
    },
    "ticket_scan": {
        "window_ms": int(os.getenv("TICKET_SCAN_WINDOW_MS", "60000")),
        "max": int(os.getenv("TICKET_SCAN_MAX", "60")),
    },
    "auth": {
        "window_ms": int(os.getenv("AUTH_WINDOW_MS", "60000")),
        "max": int(os.getenv("AUTH_MAX", "10")),
    },
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
