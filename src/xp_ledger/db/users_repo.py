"""User rows of the audit store.

A user row exists for every address the engine has ever targeted.  It is
created before any transaction row that references it, so a crash between
submission and bookkeeping never leaves an attempt without an owner row.
"""

from __future__ import annotations

from typing import Any, NoReturn

from xp_ledger.db.connection import connection_scope
from xp_ledger.db.errors import (
    DatabaseError,
    DatabaseOperationContext,
    DatabaseReadError,
    DatabaseWriteError,
)


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository read error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseReadError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository write error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseWriteError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def get_or_create_user(address: str, *, public_key: str | None = None) -> int:
    """Return the id of the user row for ``address``, creating it if absent.

    A known public key is filled in when the existing row has none; an
    existing key is never overwritten.
    """
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (address, public_key) VALUES (?, ?)",
                (address, public_key),
            )
            if public_key:
                cursor.execute(
                    "UPDATE users SET public_key = ? WHERE address = ? AND public_key IS NULL",
                    (public_key, address),
                )
            cursor.execute("SELECT id FROM users WHERE address = ?", (address,))
            row = cursor.fetchone()
        if row is None:
            raise RuntimeError("user row missing after insert")
        return int(row["id"])
    except Exception as exc:
        _raise_write_error("users.get_or_create_user", exc, details=f"address={address}")


def get_user(address: str) -> dict[str, Any] | None:
    """Return the user row for ``address`` or ``None``."""
    try:
        with connection_scope() as conn:
            row = conn.execute("SELECT * FROM users WHERE address = ?", (address,)).fetchone()
        return dict(row) if row else None
    except Exception as exc:
        _raise_read_error("users.get_user", exc, details=f"address={address}")


def update_user_xp(user_id: int, xp: int) -> bool:
    """Store the latest observed on-chain balance in the advisory mirror."""
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.execute(
                "UPDATE users SET xp = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (str(xp), user_id),
            )
        return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error("users.update_user_xp", exc, details=f"user_id={user_id}")


def list_users() -> list[dict[str, Any]]:
    try:
        with connection_scope() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [dict(row) for row in rows]
    except Exception as exc:
        _raise_read_error("users.list_users", exc)
