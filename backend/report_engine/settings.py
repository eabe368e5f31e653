"""
Environment-driven settings.

load_dotenv() runs on import so a local .env file is honoured the same way
for the API process, the scheduler and the CLI script.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

BUNDLED_CATALOG_DIR = Path(__file__).resolve().parent / "catalogs"


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def validate_timezone(name: str) -> str:
    """Return `name` if it is a valid IANA zone, otherwise UTC."""
    try:
        ZoneInfo(name)
        return name
    except Exception:
        logger.warning(f"Invalid timezone '{name}' - using UTC instead")
        return "UTC"


@dataclass
class EngineSettings:
    database_url: str = "sqlite:///./reports.db"
    catalog_dir: Path = BUNDLED_CATALOG_DIR
    cache_enabled: bool = True
    cache_max_entries: int = 512
    execution_timeout_seconds: float = 30.0
    execution_max_workers: int = 4
    scheduler_poll_seconds: int = 60
    scheduler_max_workers: int = 4
    scheduler_retry_attempts: int = 2
    scheduler_retry_backoff_seconds: float = 5.0
    scheduler_timezone: str = "UTC"
    log_level: str = "INFO"

    @property
    def execution_timeout(self):
        """Timeout for interactive executions, or None when disabled."""
        return self.execution_timeout_seconds or None

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            database_url=os.getenv("REPORT_DATABASE_URL", "sqlite:///./reports.db"),
            catalog_dir=Path(os.getenv("REPORT_CATALOG_DIR") or BUNDLED_CATALOG_DIR),
            cache_enabled=_env_bool("CACHE_ENABLED"),
            cache_max_entries=int(os.getenv("REPORT_CACHE_MAX_ENTRIES", "512")),
            execution_timeout_seconds=float(os.getenv("EXECUTION_TIMEOUT_SECONDS", "30")),
            execution_max_workers=int(os.getenv("EXECUTION_MAX_WORKERS", "4")),
            scheduler_poll_seconds=int(os.getenv("SCHEDULER_POLL_SECONDS", "60")),
            scheduler_max_workers=int(os.getenv("SCHEDULER_MAX_WORKERS", "4")),
            scheduler_retry_attempts=int(os.getenv("SCHEDULER_RETRY_ATTEMPTS", "2")),
            scheduler_retry_backoff_seconds=float(os.getenv("SCHEDULER_RETRY_BACKOFF_SECONDS", "5")),
            scheduler_timezone=validate_timezone(os.getenv("SCHEDULER_TIMEZONE", "UTC")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
