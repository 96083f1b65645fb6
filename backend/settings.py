"""
Reengage Worker Settings
Environment variable management with backward compatibility for legacy names.
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def get_env(new_var: str, old_var: Optional[str] = None, default: Optional[str] = None) -> str:
    """
    Get environment variable with backward compatibility.

    Tries new variable name first (RGE_*), falls back to old name if provided,
    then returns default if neither is set.

    Args:
        new_var: New RGE_* prefixed variable name
        old_var: Legacy variable name (for backward compatibility)
        default: Default value if neither variable is set

    Returns:
        Environment variable value or default
    """
    value = os.getenv(new_var)
    if value:
        return value

    if old_var is not None:
        value = os.getenv(old_var)
        if value:
            return value

    return default if default is not None else ""


# Application Configuration
APP_HOST = get_env("RGE_APP_HOST", "APP_HOST", "127.0.0.1")
APP_PORT = int(get_env("RGE_APP_PORT", "PORT", "3001"))

# Storage
DATABASE_URL = get_env("RGE_DATABASE_URL", "DATABASE_URL", "sqlite:///./data/reengage.db")

# Logging
LOG_FILE = get_env("RGE_LOG_FILE", "LOG_FILE", "logs/reengage.log")
LOG_LEVEL = get_env("RGE_LOG_LEVEL", "LOG_LEVEL", "INFO")

# Messaging gateway (Evolution API)
EVOLUTION_API_URL = get_env("RGE_EVOLUTION_API_URL", "EVOLUTION_API_URL", "")
EVOLUTION_API_KEY = get_env("RGE_EVOLUTION_API_KEY", "EVOLUTION_API_KEY", "")
WHATSAPP_MAX_RETRIES = int(get_env("RGE_WHATSAPP_MAX_RETRIES", None, "2"))
WHATSAPP_TIMEOUT_SECONDS = float(get_env("RGE_WHATSAPP_TIMEOUT_SECONDS", None, "30"))

# LLM provider (primary credential first, shared OPENAI_API_KEY as fallback)
OPENAI_API_KEY = get_env("RGE_OPENAI_API_KEY", "OPENAI_API_KEY", "")
OPENAI_BASE_URL = get_env("RGE_OPENAI_BASE_URL", "OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_DEFAULT_MODEL = get_env("RGE_OPENAI_DEFAULT_MODEL", None, "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = float(get_env("RGE_LLM_TIMEOUT_SECONDS", None, "30"))
RUN_POLL_ATTEMPTS = int(get_env("RGE_RUN_POLL_ATTEMPTS", None, "30"))
RUN_POLL_INTERVAL_SECONDS = float(get_env("RGE_RUN_POLL_INTERVAL_SECONDS", None, "1"))

# Poll Scheduler
POLL_INTERVAL_MINUTES = int(get_env("RGE_POLL_INTERVAL_MINUTES", None, "1"))
MAX_ITEMS_PER_TICK = int(get_env("RGE_MAX_ITEMS_PER_TICK", None, "50"))
ITEM_PAUSE_SECONDS = float(get_env("RGE_ITEM_PAUSE_SECONDS", None, "1"))
CLAIM_LEASE_SECONDS = int(get_env("RGE_CLAIM_LEASE_SECONDS", None, "300"))

# Orphan & stale detection
STALE_ITEM_HOURS = int(get_env("RGE_STALE_ITEM_HOURS", None, "6"))
ORPHAN_LOOKBACK_DAYS = int(get_env("RGE_ORPHAN_LOOKBACK_DAYS", None, "7"))
ORPHAN_LIMIT = int(get_env("RGE_ORPHAN_LIMIT", None, "1000"))

# Appointment reminders
REMINDER_HOURS_AHEAD = int(get_env("RGE_REMINDER_HOURS_AHEAD", None, "48"))

# Credits
CREDITS_MIN_BALANCE = int(get_env("RGE_CREDITS_MIN_BALANCE", None, "1000"))
CREDITS_THREAD_FLOOR = int(get_env("RGE_CREDITS_THREAD_FLOOR", None, "300"))
NOTIFICATION_COOLDOWN_MINUTES = int(get_env("RGE_NOTIFICATION_COOLDOWN_MINUTES", None, "60"))

# Business hours (local hour of the company timezone, end exclusive)
BUSINESS_HOURS_START = int(get_env("RGE_BUSINESS_HOURS_START", None, "8"))
BUSINESS_HOURS_END = int(get_env("RGE_BUSINESS_HOURS_END", None, "18"))
DEFAULT_TIMEZONE = get_env("RGE_DEFAULT_TIMEZONE", None, "America/Sao_Paulo")

# Service Identification
SERVICE_NAME = "reengage-worker"
SERVICE_VERSION = "1.0.0"
