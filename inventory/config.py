"""
Runtime configuration for the inventory core.
Loads configuration from environment variables via python-dotenv.
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field

# Load .env from project root (parent of inventory/)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)

DEFAULT_DB_PATH = "data/inventory.duckdb"


class Settings(BaseModel):
    """Inventory settings; every field maps to an INVENTORY_* environment variable."""

    db_path: str = Field(default=DEFAULT_DB_PATH)
    transaction_retries: int = Field(default=3, ge=0)
    transaction_backoff: float = Field(default=0.05, ge=0.0, description="Seconds before the first retry")
    scheduler_max_workers: int = Field(default=4, ge=1)
    collector_timeout: float = Field(default=300.0, gt=0.0, description="Seconds")
    run_stats_limit: int = Field(default=10, ge=1)
    log_level: str = Field(default="INFO")
    log_path: str | None = Field(None)


def load_settings() -> Settings:
    """Build Settings from the current environment (unset variables keep defaults)."""
    env = {
        "db_path": os.getenv("INVENTORY_DB_PATH"),
        "transaction_retries": os.getenv("INVENTORY_TRANSACTION_RETRIES"),
        "transaction_backoff": os.getenv("INVENTORY_TRANSACTION_BACKOFF"),
        "scheduler_max_workers": os.getenv("INVENTORY_SCHEDULER_MAX_WORKERS"),
        "collector_timeout": os.getenv("INVENTORY_COLLECTOR_TIMEOUT"),
        "run_stats_limit": os.getenv("INVENTORY_RUN_STATS_LIMIT"),
        "log_level": os.getenv("INVENTORY_LOG_LEVEL"),
        "log_path": os.getenv("INVENTORY_LOG_PATH"),
    }
    return Settings(**{k: v for k, v in env.items() if v not in (None, "")})


def configure_logging(settings: Settings | None = None) -> None:
    """Reset loguru sinks: stderr at the configured level, plus a rotating file if log_path is set."""
    settings = settings or load_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())
    if settings.log_path:
        logger.add(settings.log_path, level=settings.log_level.upper(), rotation="1 day", retention="7 days")
    logger.debug("Logging configured at level {}", settings.log_level.upper())
