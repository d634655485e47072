"""
VetMed Reminders — Centralized configuration.

Loads all settings from .env. Nothing here is mandatory: without VAPID keys
the push dispatcher runs disabled, but the scheduler still starts.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Web Push signing credentials (all three required to enable dispatch)
    VAPID_PUBLIC_KEY: str = ""
    VAPID_PRIVATE_KEY: str = ""
    VAPID_SUBJECT: str = ""

    # SQLite
    DATABASE_PATH: str = "data/vetmed.db"

    # Scheduler
    SCHEDULER_AUTOSTART: bool = True
    REMINDER_INTERVAL_MINUTES: int = 5
    REMINDER_LOOKAHEAD_MINUTES: int = 30
    MISSED_DOSE_INTERVAL_MINUTES: int = 15
    MISSED_DOSE_LOOKBACK_MINUTES: int = 240
    INVENTORY_CHECK_HOUR: int = 9     # UTC
    CLEANUP_HOUR: int = 2             # UTC
    NOTIFICATION_RETENTION_DAYS: int = 7
    JOB_TIMEOUT_SECONDS: int = 300

    # Fallbacks for missing per-animal / per-user values
    DEFAULT_TIMEZONE: str = "America/New_York"
    DEFAULT_LEAD_TIME_MINUTES: int = 15

    # Delivery
    PUSH_TIMEOUT_SECONDS: int = 10

    LOG_LEVEL: str = "INFO"

    @field_validator("SCHEDULER_AUTOSTART", mode="before")
    @classmethod
    def parse_bool(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in _TRUTHY

    @field_validator(
        "REMINDER_INTERVAL_MINUTES",
        "REMINDER_LOOKAHEAD_MINUTES",
        "MISSED_DOSE_INTERVAL_MINUTES",
        "MISSED_DOSE_LOOKBACK_MINUTES",
        "INVENTORY_CHECK_HOUR",
        "CLEANUP_HOUR",
        "NOTIFICATION_RETENTION_DAYS",
        "JOB_TIMEOUT_SECONDS",
        "DEFAULT_LEAD_TIME_MINUTES",
        "PUSH_TIMEOUT_SECONDS",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)

    @property
    def push_configured(self) -> bool:
        return bool(self.VAPID_PUBLIC_KEY and self.VAPID_PRIVATE_KEY and self.VAPID_SUBJECT)


def _load_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        VAPID_PUBLIC_KEY=os.getenv("VAPID_PUBLIC_KEY", ""),
        VAPID_PRIVATE_KEY=os.getenv("VAPID_PRIVATE_KEY", ""),
        VAPID_SUBJECT=os.getenv("VAPID_SUBJECT", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/vetmed.db"),
        SCHEDULER_AUTOSTART=os.getenv("SCHEDULER_AUTOSTART", "true"),
        REMINDER_INTERVAL_MINUTES=os.getenv("REMINDER_INTERVAL_MINUTES", "5"),
        REMINDER_LOOKAHEAD_MINUTES=os.getenv("REMINDER_LOOKAHEAD_MINUTES", "30"),
        MISSED_DOSE_INTERVAL_MINUTES=os.getenv("MISSED_DOSE_INTERVAL_MINUTES", "15"),
        MISSED_DOSE_LOOKBACK_MINUTES=os.getenv("MISSED_DOSE_LOOKBACK_MINUTES", "240"),
        INVENTORY_CHECK_HOUR=os.getenv("INVENTORY_CHECK_HOUR", "9"),
        CLEANUP_HOUR=os.getenv("CLEANUP_HOUR", "2"),
        NOTIFICATION_RETENTION_DAYS=os.getenv("NOTIFICATION_RETENTION_DAYS", "7"),
        JOB_TIMEOUT_SECONDS=os.getenv("JOB_TIMEOUT_SECONDS", "300"),
        DEFAULT_TIMEZONE=os.getenv("DEFAULT_TIMEZONE", "America/New_York"),
        DEFAULT_LEAD_TIME_MINUTES=os.getenv("DEFAULT_LEAD_TIME_MINUTES", "15"),
        PUSH_TIMEOUT_SECONDS=os.getenv("PUSH_TIMEOUT_SECONDS", "10"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
