import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _int_list(name: str) -> list[int]:
    raw = os.getenv(name, "")
    return [int(part) for part in raw.replace(";", ",").split(",") if part.strip()]


ENVIRONMENT = os.getenv("ENVIRONMENT", "production")
IS_DEVELOPMENT = ENVIRONMENT == "development"

# --- Telegram admin console ---
BOT_TOKEN = os.getenv("BOT_TOKEN")
ADMIN_IDS = _int_list("ADMIN_IDS")

# --- Database ---
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = int(os.getenv("DB_PORT", "5432"))
DB_MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "2"))
DB_MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "20"))

# --- HTTP API ---
WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.getenv("WEB_PORT", "8080"))
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "https://strawberrydips.shop")

# --- IntaSend ---
INTASEND_PUBLISHABLE_KEY = os.getenv("INTASEND_PUBLISHABLE_KEY", "")
INTASEND_SECRET_KEY = os.getenv("INTASEND_SECRET_KEY", "")
INTASEND_TEST_MODE = _bool("INTASEND_TEST_MODE")
INTASEND_WEBHOOK_CHALLENGE = os.getenv("INTASEND_WEBHOOK_CHALLENGE")
INTASEND_TIMEOUT_SECONDS = float(os.getenv("INTASEND_TIMEOUT_SECONDS", "15"))

# --- Payment status polling ---
POLL_INITIAL_DELAY_SECONDS = float(os.getenv("POLL_INITIAL_DELAY_SECONDS", "5"))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "10"))
POLL_MAX_ATTEMPTS = int(os.getenv("POLL_MAX_ATTEMPTS", "30"))
PENDING_ORDER_TIMEOUT_HOURS = int(os.getenv("PENDING_ORDER_TIMEOUT_HOURS", "24"))
CART_IDLE_HOURS = float(os.getenv("CART_IDLE_HOURS", "24"))

# --- Mail ---
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM", SMTP_USER or "orders@strawberrydips.shop")
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@strawberrydips.com")

# --- Pricing ---
CURRENCY = os.getenv("CURRENCY", "KES")
DELIVERY_FEE = Decimal(os.getenv("DELIVERY_FEE", "300.00"))

TIMEZONE_OFFSET = int(os.getenv("TIMEZONE_OFFSET", "3"))


def get_admin_ids() -> list[int]:
    return list(ADMIN_IDS)
