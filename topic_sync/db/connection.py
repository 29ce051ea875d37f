"""PostgreSQL connection handling."""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import psycopg2

from ..config import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


@contextmanager
def get_connection(dsn: Optional[str] = None) -> Generator:
    """Connection that commits on success and rolls back on error."""
    conn = psycopg2.connect(dsn or get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def connection_factory(dsn: Optional[str] = None):
    """Zero-arg callable returning get_connection() contexts for a fixed DSN."""
    return lambda: get_connection(dsn)


def init_db(dsn: Optional[str] = None) -> None:
    """Create the schema if it doesn't exist."""
    schema_sql = SCHEMA_PATH.read_text()
    with get_connection(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
    logger.info("Database schema ready")
