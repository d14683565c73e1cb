"""
config.py

Environment configuration for the Tailor Marketplace workflow API.

Values are read once at import time from the process environment, after
loading an optional ``.env`` file from the project root.  Workflow policy
values (plan deadlines, revision limits, ...) only seed the settings store;
admins can change them at runtime through the settings endpoints.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


APP_NAME = os.getenv("APP_NAME", "Tailor Marketplace Order Fulfillment API")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Money
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

# CORS - comma separated list, "*" allows everything
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Seeded admin account so a fresh process can manage settings and disputes
ADMIN_USER_ID = os.getenv("ADMIN_USER_ID", "00000000-0000-0000-0000-000000000001")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@tailor-marketplace.local")

# Workflow policy defaults, overridable per key with the upper-cased name
DEFAULT_POLICY_SETTINGS = {
    "order_plan_creation_deadline_hours": _env_int("ORDER_PLAN_CREATION_DEADLINE_HOURS", 168),
    "order_plan_reminder_hours_before": _env_int("ORDER_PLAN_REMINDER_HOURS_BEFORE", 12),
    "order_max_plan_revisions": _env_int("ORDER_MAX_PLAN_REVISIONS", 3),
    "order_customer_approval_required": _env_bool("ORDER_CUSTOMER_APPROVAL_REQUIRED", True),
    "order_require_work_plan": _env_bool("ORDER_REQUIRE_WORK_PLAN", True),
    "order_notify_admin_on_completion": _env_bool("ORDER_NOTIFY_ADMIN_ON_COMPLETION", True),
    "order_notify_admin_on_delay": _env_bool("ORDER_NOTIFY_ADMIN_ON_DELAY", True),
    "quote_validity_days": _env_int("QUOTE_VALIDITY_DAYS", 14),
}


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
