"""Transaction rows of the audit store.

Every submission attempt gets exactly one row keyed by its opId.  Rows are
inserted ``pending`` before the message is sent and finalized afterwards;
the only later change allowed is the backfill of ``tx_hash`` and the
``failed -> success`` correction for an attempt found in ledger history.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from typing import Any, NoReturn

from xp_ledger.db.connection import connection_scope
from xp_ledger.db.errors import (
    AuditInvariantError,
    DatabaseError,
    DatabaseOperationContext,
    DatabaseReadError,
    DatabaseWriteError,
)


def op_id_hex(op_id: int) -> str:
    """Canonical 64-hex-digit text form of an opId."""
    return format(op_id, "064x")


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository read error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseReadError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository write error; trigger aborts get their own type."""
    if isinstance(exc, DatabaseError):
        raise exc
    context = DatabaseOperationContext(operation=operation, details=details)
    if isinstance(exc, sqlite3.IntegrityError) and "audit invariant violated" in str(exc):
        raise AuditInvariantError(context=context, cause=exc) from exc
    raise DatabaseWriteError(context=context, cause=exc) from exc


def insert_pending(
    *,
    op_id: int,
    user_id: int,
    amount: int,
    sender_address: str,
    receiver_address: str,
    contract_address: str,
    contract_owner: str | None,
    contract_version: int | None,
    last_op_time: int | None,
    fee: int,
    attempt: int,
    description: str | None = None,
    timestamp: datetime | None = None,
) -> int:
    """Append a ``pending`` row for an attempt about to be submitted.

    Returns:
        The new row id.

    Raises:
        DatabaseWriteError: The insert failed (including an unknown
            ``user_id`` or a repeated ``op_id``).
    """
    stamp = (timestamp or datetime.now(UTC)).isoformat()
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.execute(
                """
                INSERT INTO transactions (
                    op_id,
                    amount,
                    timestamp,
                    sender_address,
                    receiver_address,
                    contract_address,
                    contract_owner,
                    contract_version,
                    last_op_time,
                    status,
                    description,
                    fee,
                    attempt,
                    user_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)
                """,
                (
                    op_id_hex(op_id),
                    str(amount),
                    stamp,
                    sender_address,
                    receiver_address,
                    contract_address,
                    contract_owner,
                    contract_version,
                    None if last_op_time is None else str(last_op_time),
                    description,
                    fee,
                    attempt,
                    user_id,
                ),
            )
            row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("insert returned no row id")
        return int(row_id)
    except Exception as exc:
        _raise_write_error(
            "transactions.insert_pending", exc, details=f"op_id={op_id_hex(op_id)[:16]}"
        )


def finalize(
    op_id: int,
    status: str,
    *,
    description: str | None = None,
    tx_hash: str | None = None,
    exit_code: int | None = None,
    contract_version: int | None = None,
    last_op_time: int | None = None,
    diagnostics: dict[str, Any] | None = None,
) -> bool:
    """Record a terminal status plus whatever evidence is available.

    ``None`` arguments leave the stored value untouched, and an already
    recorded ``tx_hash`` is kept.

    Returns:
        ``True`` when a row was updated, ``False`` for an unknown opId.
    """
    if status not in ("success", "failed"):
        raise ValueError(f"finalize expects a terminal status, got {status!r}")
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE transactions SET
                    status = ?,
                    description = COALESCE(?, description),
                    tx_hash = COALESCE(tx_hash, ?),
                    exit_code = COALESCE(?, exit_code),
                    contract_version = COALESCE(?, contract_version),
                    last_op_time = COALESCE(?, last_op_time),
                    diagnostics = COALESCE(?, diagnostics),
                    updated_at = CURRENT_TIMESTAMP
                WHERE op_id = ?
                """,
                (
                    status,
                    description,
                    tx_hash,
                    exit_code,
                    contract_version,
                    None if last_op_time is None else str(last_op_time),
                    None if diagnostics is None else json.dumps(diagnostics, sort_keys=True),
                    op_id_hex(op_id),
                ),
            )
        return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error(
            "transactions.finalize", exc, details=f"op_id={op_id_hex(op_id)[:16]} status={status}"
        )


def mark_success(op_id: int, **evidence: Any) -> bool:
    return finalize(op_id, "success", **evidence)


def mark_failed(op_id: int, description: str, **evidence: Any) -> bool:
    return finalize(op_id, "failed", description=description, **evidence)


def set_tx_hash(op_id: int, tx_hash: str) -> bool:
    """Backfill the ledger transaction hash if none is recorded yet."""
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE transactions SET tx_hash = ?, updated_at = CURRENT_TIMESTAMP
                WHERE op_id = ? AND tx_hash IS NULL
                """,
                (tx_hash, op_id_hex(op_id)),
            )
        return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error("transactions.set_tx_hash", exc, details=f"op_id={op_id_hex(op_id)[:16]}")


def _decode_row(row: sqlite3.Row) -> dict[str, Any]:
    record = dict(row)
    if record.get("diagnostics"):
        record["diagnostics"] = json.loads(record["diagnostics"])
    return record


def get_transaction(op_id: int) -> dict[str, Any] | None:
    try:
        with connection_scope() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE op_id = ?", (op_id_hex(op_id),)
            ).fetchone()
        return _decode_row(row) if row else None
    except Exception as exc:
        _raise_read_error("transactions.get_transaction", exc)


def list_transactions(
    *, user_id: int | None = None, status: str | None = None, limit: int = 100
) -> list[dict[str, Any]]:
    """Newest-first transaction rows, optionally filtered."""
    clauses: list[str] = []
    params: list[Any] = []
    if user_id is not None:
        clauses.append("user_id = ?")
        params.append(user_id)
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions {where} ORDER BY id DESC LIMIT ?",  # nosec B608
                params,
            ).fetchall()
        return [_decode_row(row) for row in rows]
    except Exception as exc:
        _raise_read_error("transactions.list_transactions", exc)


def count_by_status() -> dict[str, int]:
    try:
        with connection_scope() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM transactions GROUP BY status"
            ).fetchall()
        return {row["status"]: int(row["n"]) for row in rows}
    except Exception as exc:
        _raise_read_error("transactions.count_by_status", exc)
