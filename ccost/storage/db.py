"""
Database connection management.

Provides SQLite connection for data persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "~/.ccost/ccost.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, shared: bool = False) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file (``~`` is expanded, parent
            directories are created)
        shared: Allow the connection to be used from worker threads. Callers
            passing True must serialize access themselves.

    Returns:
        SQLite connection
    """
    path = Path(db_path).expanduser()
    if str(db_path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=not shared)
    return conn
