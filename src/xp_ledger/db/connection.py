"""SQLite connection primitives for the audit store.

Repositories open one short-lived connection per statement group through
:func:`connection_scope`; no connection or lock outlives a single call.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


def get_db_path() -> Path:
    """Resolve the absolute audit database path from runtime configuration."""
    from xp_ledger.config import config

    return config.database.absolute_path


def configure_connection(connection: sqlite3.Connection) -> sqlite3.Connection:
    """Apply the pragmas the audit schema relies on.

    Notes:
        - ``foreign_keys=ON`` makes ``transactions.user_id`` cascade and
          rejects rows whose user does not exist.
        - ``busy_timeout`` absorbs brief lock contention when a CLI query runs
          alongside a batch.
    """
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute("PRAGMA busy_timeout = 5000")
    return connection


def get_connection() -> sqlite3.Connection:
    """Create and configure a new SQLite connection."""
    path = get_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(path))
    connection.row_factory = sqlite3.Row
    return configure_connection(connection)


@contextmanager
def connection_scope(*, write: bool = False) -> Iterator[sqlite3.Connection]:
    """Yield a configured connection and always close it.

    Args:
        write: When True, commit on success and roll back on exceptions.
    """
    connection = get_connection()
    try:
        yield connection
        if write:
            connection.commit()
    except Exception:
        if write:
            try:
                connection.rollback()
            except sqlite3.Error:
                # Preserve the original exception while best-effort rolling back.
                pass
        raise
    finally:
        connection.close()
