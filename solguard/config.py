"""
SolGuard — Centralized configuration.

Loads all settings from .env and validates required keys.
Core modules never import this; values are injected by the bot wiring.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from solguard/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # SQLite
    DATABASE_PATH: str = "data/solguard.db"

    # Check-in rules are interpreted in this timezone
    TIMEZONE: str = "UTC"

    # Scheduler
    EVALUATION_INTERVAL_SECONDS: int = 60
    DEFAULT_GRACE_MINUTES: int = 30
    CHECKIN_SATISFIES_ALL_OPEN: bool = True  # one "I'm safe" closes every open window
    SEED_DEFAULT_SCHEDULES: bool = True

    # Alerts: "telegram" | "webhook"
    ALERT_PROVIDER: str = "telegram"
    ALERT_CHAT_IDS: list[int] = []
    ALERT_WEBHOOK_URL: str = ""
    ALERT_WEBHOOK_TOKEN: str = ""
    ALERT_TIMEOUT_SECONDS: float = 10

    @field_validator("ALLOWED_USER_IDS", "ALERT_CHAT_IDS", mode="before")
    @classmethod
    def parse_id_list(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("CHECKIN_SATISFIES_ALL_OPEN", "SEED_DEFAULT_SCHEDULES", mode="before")
    @classmethod
    def parse_flag(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in ("1", "true", "yes", "on")


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/solguard.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        EVALUATION_INTERVAL_SECONDS=os.getenv("EVALUATION_INTERVAL_SECONDS", "60"),
        DEFAULT_GRACE_MINUTES=os.getenv("DEFAULT_GRACE_MINUTES", "30"),
        CHECKIN_SATISFIES_ALL_OPEN=os.getenv("CHECKIN_SATISFIES_ALL_OPEN", "true"),
        SEED_DEFAULT_SCHEDULES=os.getenv("SEED_DEFAULT_SCHEDULES", "true"),
        ALERT_PROVIDER=os.getenv("ALERT_PROVIDER", "telegram"),
        ALERT_CHAT_IDS=os.getenv("ALERT_CHAT_IDS", ""),
        ALERT_WEBHOOK_URL=os.getenv("ALERT_WEBHOOK_URL", ""),
        ALERT_WEBHOOK_TOKEN=os.getenv("ALERT_WEBHOOK_TOKEN", ""),
        ALERT_TIMEOUT_SECONDS=os.getenv("ALERT_TIMEOUT_SECONDS", "10"),
    )


# Singleton — imported by the bot and adapters as:
#   from solguard.config import settings
settings = _load_settings()
