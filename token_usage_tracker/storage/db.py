"""
Database connection management.

Provides the SQLite connection backing the settings blob.
"""

import sqlite3
from pathlib import Path


DEFAULT_DB_PATH = "token_usage.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection, creating parent directories.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path))
