"""
Runtime configuration for the topic sync pipeline.

All knobs come from environment variables (a project-root .env is loaded if
present). Numeric knobs are bounds-checked; out-of-range values fall back to
their defaults with a warning.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_DATABASE_URL = "postgresql://localhost:5432/topic_sync"
DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"

# Intercom rejects search pages larger than this
INTERCOM_MAX_PER_PAGE = 150


class ConfigError(Exception):
    """Raised when required configuration is missing or unusable."""


def load_env_file(path: Optional[Path] = None) -> bool:
    """Load a .env file into the process environment.

    Existing environment variables win over values in the file.
    Returns True if a file was found and loaded.
    """
    env_path = path or PROJECT_ROOT / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        return True
    return False


def _parse_env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds checking.

    Returns the default (with a warning) if the value is invalid or out of bounds.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        val = int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} invalid, using {default}")
        return default
    if not (min_val <= val <= max_val):
        logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
        return default
    return val


def _parse_env_float(name: str, default: float, min_val: float, max_val: float) -> float:
    """Float counterpart of _parse_env_int."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        val = float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} invalid, using {default}")
        return default
    if not (min_val <= val <= max_val):
        logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
        return default
    return val


@dataclass
class SyncSettings:
    """Resolved pipeline settings."""

    intercom_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    openai_model: str = DEFAULT_OPENAI_MODEL

    # Batch enricher
    batch_size: int = 5
    base_delay: float = 2.0
    max_delay: float = 60.0
    batch_pause: float = 0.0
    max_saturated_retries: int = 5

    # Transport
    per_page: int = INTERCOM_MAX_PER_PAGE
    connect_timeout: float = 10.0
    read_timeout: float = 60.0

    # Store
    chunk_size: int = 200

    # Categorizer
    taxonomy_file: Optional[str] = None
    topic_mapping_ttl: float = 3600.0

    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from the current environment."""
        base_delay = _parse_env_float("ENRICH_BASE_DELAY", 2.0, 0.0, 300.0)
        max_delay = _parse_env_float("ENRICH_MAX_DELAY", 60.0, 0.0, 3600.0)
        if max_delay < base_delay:
            logger.warning(
                f"ENRICH_MAX_DELAY={max_delay} below ENRICH_BASE_DELAY={base_delay}, "
                f"using {base_delay}"
            )
            max_delay = base_delay

        return cls(
            intercom_token=os.getenv("INTERCOM_ACCESS_TOKEN") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            openai_model=os.getenv("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
            batch_size=_parse_env_int("ENRICH_BATCH_SIZE", 5, 1, 50),
            base_delay=base_delay,
            max_delay=max_delay,
            batch_pause=_parse_env_float("ENRICH_BATCH_PAUSE", 0.0, 0.0, 600.0),
            max_saturated_retries=_parse_env_int("ENRICH_MAX_SATURATED_RETRIES", 5, 0, 1000),
            per_page=_parse_env_int("INTERCOM_PER_PAGE", INTERCOM_MAX_PER_PAGE, 1, INTERCOM_MAX_PER_PAGE),
            connect_timeout=_parse_env_float("HTTP_CONNECT_TIMEOUT", 10.0, 1.0, 300.0),
            read_timeout=_parse_env_float("HTTP_READ_TIMEOUT", 60.0, 1.0, 600.0),
            chunk_size=_parse_env_int("STORE_CHUNK_SIZE", 200, 1, 1000),
            taxonomy_file=os.getenv("TOPIC_TAXONOMY_FILE") or None,
            topic_mapping_ttl=_parse_env_float("TOPIC_MAPPING_TTL", 3600.0, 0.0, 7 * 86400.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )

    def require(self, intercom: bool = True, openai: bool = True) -> None:
        """Fail fast if credentials needed by the requested mode are missing.

        Raises:
            ConfigError: naming every missing variable
        """
        missing = []
        if intercom and not self.intercom_token:
            missing.append("INTERCOM_ACCESS_TOKEN")
        if openai and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.database_url:
            missing.append("DATABASE_URL")
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
