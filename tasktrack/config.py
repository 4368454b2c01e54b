"""
Configuration module for tasktrack
"""

import os
from dataclasses import dataclass
from typing import Optional

from . import __version__


def env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable"""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


VERSION = os.getenv("TASKTRACK_VERSION", __version__)

# Database configuration
sqlite_path = os.getenv("SQLITE_PATH", "./tasktrack.db")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{sqlite_path}")
DB_SCHEMA = os.getenv("TASKTRACK_DB_SCHEMA") or None

# Reporter configuration
REPORTER_INTERVAL_SECONDS = 10.0
REPORTER_STALE_SECONDS = 60.0
COLLECTION_TIMEOUT_SECONDS = 5.0
CLEANUP_INTERVAL_SECONDS = 3600.0

# Retention / query configuration
RETENTION_DAYS = 30
METRICS_STALE_SECONDS = 30.0

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")


@dataclass(frozen=True)
class Settings:
    """Explicit configuration handed to the store and the reporter at startup."""

    database_url: str = DATABASE_URL
    db_schema: Optional[str] = DB_SCHEMA
    reporter_interval_seconds: float = REPORTER_INTERVAL_SECONDS
    reporter_stale_seconds: float = REPORTER_STALE_SECONDS
    collection_timeout_seconds: float = COLLECTION_TIMEOUT_SECONDS
    cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS
    retention_days: int = RETENTION_DAYS
    metrics_stale_seconds: float = METRICS_STALE_SECONDS
    include_children: bool = True
    log_level: str = LOG_LEVEL
    log_format: str = LOG_FORMAT
    reporter_metrics_port: int = 0
    echo_sql: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from TASKTRACK_* environment variables"""
        return cls(
            database_url=os.getenv("DATABASE_URL", DATABASE_URL),
            db_schema=os.getenv("TASKTRACK_DB_SCHEMA") or None,
            reporter_interval_seconds=float(os.getenv("TASKTRACK_REPORTER_INTERVAL_SECONDS", REPORTER_INTERVAL_SECONDS)),
            reporter_stale_seconds=float(os.getenv("TASKTRACK_REPORTER_STALE_SECONDS", REPORTER_STALE_SECONDS)),
            collection_timeout_seconds=float(os.getenv("TASKTRACK_COLLECTION_TIMEOUT_SECONDS", COLLECTION_TIMEOUT_SECONDS)),
            cleanup_interval_seconds=float(os.getenv("TASKTRACK_CLEANUP_INTERVAL_SECONDS", CLEANUP_INTERVAL_SECONDS)),
            retention_days=int(os.getenv("TASKTRACK_RETENTION_DAYS", RETENTION_DAYS)),
            metrics_stale_seconds=float(os.getenv("TASKTRACK_METRICS_STALE_SECONDS", METRICS_STALE_SECONDS)),
            include_children=env_bool("TASKTRACK_INCLUDE_CHILDREN", True),
            log_level=os.getenv("LOG_LEVEL", LOG_LEVEL),
            log_format=os.getenv("LOG_FORMAT", LOG_FORMAT),
            reporter_metrics_port=int(os.getenv("TASKTRACK_REPORTER_METRICS_PORT", "0")),
            echo_sql=env_bool("TASKTRACK_ECHO_SQL", False),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the active settings, loading them from the environment on first use"""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def set_settings(settings: Settings) -> None:
    global _settings
    _settings = settings
