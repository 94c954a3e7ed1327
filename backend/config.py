"""
Application configuration.

Settings are read once from environment variables (optionally seeded from a
.env file) into an immutable Settings object. Out-of-range numeric values
fall back to safe defaults with a logged warning.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Must run before auth/security.py reads os.environ at import
load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///./task_manager.db"
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
PRODUCTION_ENVIRONMENTS = ("production", "staging")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    environment: str = "development"
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    enable_jobs: bool = False
    recurring_tasks_interval_seconds: int = 300
    recurring_max_occurrences_per_pass: int = 100
    recurring_max_tasks_per_batch: int = 1000

    @property
    def is_production_like(self) -> bool:
        return self.environment.lower() in PRODUCTION_ENVIRONMENTS


def _read_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def read_int_setting(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️  Invalid {name} value in environment. Using default of {default}.")
        return default
    if value < minimum or value > maximum:
        logger.warning(
            f"⚠️  {name}={value} is outside safe range ({minimum}-{maximum}). "
            f"Using default of {default}."
        )
        return default
    return value


def load_settings() -> Settings:
    """
    Build Settings from the environment.

    Values from a .env file were loaded at import; variables already present
    in the environment take precedence over it.
    """

    origins_raw = os.environ.get("CORS_ORIGINS", "")
    cors_origins = [o.strip() for o in origins_raw.split(",") if o.strip()] or list(DEFAULT_CORS_ORIGINS)

    settings = Settings(
        database_url=os.environ.get("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
        environment=os.environ.get("ENVIRONMENT", "development"),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        cors_origins=cors_origins,
        enable_jobs=_read_bool("ENABLE_JOBS", False),
        recurring_tasks_interval_seconds=read_int_setting("RECURRING_TASKS_INTERVAL_SECONDS", 300, 10, 86400),
        recurring_max_occurrences_per_pass=read_int_setting("RECURRING_MAX_OCCURRENCES_PER_PASS", 100, 1, 1000),
        recurring_max_tasks_per_batch=read_int_setting("RECURRING_MAX_TASKS_PER_BATCH", 1000, 1, 1000),
    )

    if settings.is_production_like and settings.database_url.startswith("sqlite"):
        logger.warning("⚠️  Running a production-like environment on SQLite. Set DATABASE_URL to PostgreSQL.")

    return settings
