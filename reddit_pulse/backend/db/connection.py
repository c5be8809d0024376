"""Database connection manager with FK enforcement and WAL mode."""

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog

logger = structlog.get_logger()

SCHEMA_PATH = Path(__file__).parent / "schema.sql"
DEFAULT_DB_PATH = "./data/reddit_pulse.db"


def open_connection(db_path: str = None) -> sqlite3.Connection:
    """Open an SQLite connection with foreign keys on, WAL mode and Row rows.

    Args:
        db_path: Path to the SQLite database file. If None, reads from DB_PATH
                 environment variable, falling back to './data/reddit_pulse.db'.
                 The parent directory is created if missing.

    Returns:
        sqlite3.Connection owned by the caller.
    """
    if db_path is None:
        db_path = os.environ.get('DB_PATH', DEFAULT_DB_PATH)

    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # check_same_thread=False: the collector's asyncio workers and the API
    # share one connection; writes are still serialized by the caller.
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def get_connection(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager that yields an SQLite connection with FK enforcement and WAL mode.

    Example:
        with get_connection() as conn:
            rows = conn.execute("SELECT * FROM reddit_posts").fetchall()
    """
    conn = None
    try:
        conn = open_connection(db_path)
        yield conn
    finally:
        if conn is not None:
            conn.close()


def init_schema(conn: sqlite3.Connection) -> None:
    """Apply schema.sql. Every statement is IF NOT EXISTS, so this is idempotent."""
    sql = SCHEMA_PATH.read_text()
    # executescript resets per-connection PRAGMAs, so keep them out of the script
    statements = [line for line in sql.splitlines()
                  if not line.strip().upper().startswith("PRAGMA")]
    conn.executescript("\n".join(statements))
    conn.execute("PRAGMA foreign_keys = ON")
    logger.debug("schema_initialized", schema=str(SCHEMA_PATH))
