"""
Simulation Settings

Centralized runtime configuration for the simulation engine.
All settings are loaded from environment variables (a local .env is honoured).
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on garbage."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_float_env(key: str, default: float) -> float:
    """Get a float value from environment variable, falling back on garbage."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


DISPATCH_MODES = ("poll", "inline")


class Settings:
    """
    Runtime settings for the simulation engine.

    To add a new setting:
    1. Add it here, loaded from an environment variable
    2. Document the default in .env.example
    3. Pass it into the service that needs it
    """

    def __init__(self, **overrides):
        self.environment: str = os.getenv("ENVIRONMENT", "development")
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./classroom_sim.db")
        self.sql_echo: bool = get_bool_env("SQL_ECHO", False)

        # Worker
        self.worker_concurrency: int = get_int_env("SIMULATION_WORKER_CONCURRENCY", 4)
        self.batch_limit: int = get_int_env("SIMULATION_BATCH_LIMIT", 10)
        self.preview_limit: int = get_int_env("SIMULATION_PREVIEW_LIMIT", 5)
        self.poll_interval_seconds: int = get_int_env("SIMULATION_POLL_INTERVAL_SECONDS", 30)
        self.job_stale_after_seconds: int = get_int_env("SIMULATION_JOB_STALE_AFTER_SECONDS", 600)
        self.dispatch_mode: str = os.getenv("SIMULATION_DISPATCH_MODE", "poll").lower()
        self.worker_loop_enabled: bool = get_bool_env("SIMULATION_WORKER_LOOP", False)
        self.allowed_origins: str = os.getenv("ALLOWED_ORIGINS", "")

        # Ledger defaults for classrooms without explicit starting values
        self.default_starting_balance: float = get_float_env("DEFAULT_STARTING_BALANCE", 1000.0)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

        if self.dispatch_mode not in DISPATCH_MODES:
            self.dispatch_mode = "poll"

    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.database_url.lower()

    def effective_concurrency(self, requested: Optional[int] = None) -> int:
        """
        Concurrency the worker may actually use.

        SQLite serializes writers, so concurrent job transactions only
        produce lock errors there; it always runs one job at a time.
        """
        value = requested if requested is not None else self.worker_concurrency
        if self.is_sqlite:
            return 1
        return max(1, value)

    def as_dict(self) -> dict:
        return {
            key: value
            for key, value in self.__dict__.items()
            if not key.startswith('_') and key != "database_url"
        }


# Singleton instance for easy importing
settings = Settings()
