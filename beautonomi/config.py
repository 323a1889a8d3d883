"""Application configuration loaded from the environment."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env")


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///beautonomi.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Seconds a booking request waits for the staff slot lock before giving up
    BOOKING_LOCK_TIMEOUT_SECONDS = float(os.getenv("BOOKING_LOCK_TIMEOUT_SECONDS", "10"))
    # Extra minutes appended to each window when checking for conflicts
    BOOKING_BUFFER_MINUTES = int(os.getenv("BOOKING_BUFFER_MINUTES", "0"))

    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "ZAR")
    LOYALTY_POINTS_PER_CURRENCY_UNIT = float(os.getenv("LOYALTY_POINTS_PER_CURRENCY_UNIT", "1"))

    CORS_ORIGINS = _env_list("CORS_ORIGINS", "*")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    BOOKING_LOCK_TIMEOUT_SECONDS = 2.0
