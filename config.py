"""Runtime configuration for the finance tracker engine.

Values come from environment variables (optionally a ``.env`` file) and are
exposed as module-level constants. Components take these as defaults and
accept explicit overrides so tests never depend on the environment.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


# Database
# Default to local SQLite, but allow override for Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///finance_tracker.db")
SQLITE_BUSY_TIMEOUT_SECONDS = _float("SQLITE_BUSY_TIMEOUT_SECONDS", 30.0)

# Plaid
PLAID_CLIENT_ID = os.getenv("PLAID_CLIENT_ID")
PLAID_SECRET = os.getenv("PLAID_SECRET")
PLAID_ENV = os.getenv("PLAID_ENV", "sandbox")
PLAID_WEBHOOK_URL = os.getenv("PLAID_WEBHOOK_URL")
PLAID_TIMEOUT_SECONDS = _float("PLAID_TIMEOUT_SECONDS", 30.0)

# Sync pipeline
MAX_PAGE_SIZE = 500  # enforced by the provider
SYNC_PAGE_SIZE = min(_int("SYNC_PAGE_SIZE", MAX_PAGE_SIZE), MAX_PAGE_SIZE)
SYNC_OFFSET_CEILING = _int("SYNC_OFFSET_CEILING", 10_000)
SYNC_PAGE_DELAY_SECONDS = _float("SYNC_PAGE_DELAY_SECONDS", 0.2)
SYNC_MAX_RETRIES = _int("SYNC_MAX_RETRIES", 2)
SYNC_BACKOFF_BASE_SECONDS = _float("SYNC_BACKOFF_BASE_SECONDS", 1.0)
SYNC_BACKOFF_MAX_SECONDS = _float("SYNC_BACKOFF_MAX_SECONDS", 8.0)
SYNC_MAX_WORKERS = _int("SYNC_MAX_WORKERS", 1)

# Budgets and alerts
DEFAULT_ALERT_THRESHOLD = _int("DEFAULT_ALERT_THRESHOLD", 80)
APPROACHING_MARGIN = _int("APPROACHING_MARGIN", 10)
ALERT_DEDUP_HOURS = _int("ALERT_DEDUP_HOURS", 24)

# Notifications (email delivery is stubbed and only logged)
EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "resend")
FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@expensetracker.com")
FROM_NAME = os.getenv("FROM_NAME", "Expense Tracker")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
