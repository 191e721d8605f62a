"""PostgreSQL connection handling shared by the stores."""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

import psycopg2

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """A data store read or write failed."""


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.getenv(
        "DATABASE_URL",
        "postgresql://localhost:5432/call_analysis"
    )


@contextmanager
def get_connection(database_url: Optional[str] = None) -> Generator:
    """Get a database connection context manager.

    Commits on success and rolls back on any exception. psycopg2 errors are
    re-raised as StoreError.
    """
    try:
        conn = psycopg2.connect(database_url or get_connection_string())
    except psycopg2.Error as e:
        raise StoreError(f"Could not connect to database: {e}") from e
    try:
        yield conn
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        raise StoreError(str(e).strip() or type(e).__name__) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
