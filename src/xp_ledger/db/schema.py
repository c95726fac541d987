"""Audit store schema and invariant triggers.

Two tables:

``users``
    One row per ledger address ever targeted.  ``xp`` is an advisory mirror of
    the on-chain balance kept as TEXT because SQLite integers are signed
    64-bit and balances are unsigned.

``transactions``
    One row per submission attempt, keyed by its ``op_id``.  Rows are created
    ``pending`` before the message leaves the process and move to ``success``
    or ``failed`` afterwards.  Triggers keep the identifying columns
    immutable and only allow the forward status moves the engine makes,
    including the late ``failed -> success`` backfill when an attempt that
    looked stalled turns up in the ledger history.
"""

from __future__ import annotations

import sqlite3

from xp_ledger.db.connection import connection_scope

TRANSACTION_STATUSES = ("pending", "success", "failed")

INDEX_STATEMENTS = (
    "CREATE INDEX IF NOT EXISTS idx_transactions_user_id ON transactions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions(status)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_timestamp ON transactions(timestamp)",
)


def create_tables(cursor: sqlite3.Cursor) -> None:
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            address TEXT UNIQUE NOT NULL,
            public_key TEXT,
            xp TEXT NOT NULL DEFAULT '0',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            op_id TEXT UNIQUE NOT NULL,
            tx_hash TEXT,
            amount TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            sender_address TEXT NOT NULL,
            receiver_address TEXT NOT NULL,
            contract_address TEXT NOT NULL,
            contract_owner TEXT,
            contract_version INTEGER,
            last_op_time TEXT,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'success', 'failed')),
            description TEXT,
            fee INTEGER NOT NULL DEFAULT 0,
            attempt INTEGER NOT NULL DEFAULT 1,
            exit_code INTEGER,
            diagnostics TEXT,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE
        )
    """)


def create_transaction_invariant_triggers(cursor: sqlite3.Cursor) -> None:
    """Install triggers guarding audit rows.

    Invariant model:
    - ``op_id``, ``amount``, ``timestamp``, addresses, ``fee``, ``attempt``
      and ``user_id`` never change after insert.
    - A terminal row never returns to ``pending``; ``success`` is final.
    - ``tx_hash`` is write-once.
    """
    cursor.execute("DROP TRIGGER IF EXISTS enforce_transaction_immutable_columns")
    cursor.execute("DROP TRIGGER IF EXISTS enforce_transaction_status_transition")

    cursor.execute("""
        CREATE TRIGGER enforce_transaction_immutable_columns
        BEFORE UPDATE ON transactions
        BEGIN
            SELECT
                CASE
                    WHEN NEW.op_id != OLD.op_id
                      OR NEW.amount != OLD.amount
                      OR NEW.timestamp != OLD.timestamp
                      OR NEW.sender_address != OLD.sender_address
                      OR NEW.receiver_address != OLD.receiver_address
                      OR NEW.contract_address != OLD.contract_address
                      OR NEW.fee != OLD.fee
                      OR NEW.attempt != OLD.attempt
                      OR NEW.user_id != OLD.user_id
                    THEN RAISE(ABORT, 'audit invariant violated: immutable column changed')
                END;

            SELECT
                CASE
                    WHEN OLD.tx_hash IS NOT NULL AND NEW.tx_hash IS NOT OLD.tx_hash
                    THEN RAISE(ABORT, 'audit invariant violated: tx_hash already recorded')
                END;
        END;
    """)

    cursor.execute("""
        CREATE TRIGGER enforce_transaction_status_transition
        BEFORE UPDATE OF status ON transactions
        BEGIN
            SELECT
                CASE
                    WHEN OLD.status != 'pending' AND NEW.status = 'pending'
                    THEN RAISE(ABORT, 'audit invariant violated: terminal row reopened')
                END;

            SELECT
                CASE
                    WHEN OLD.status = 'success' AND NEW.status != 'success'
                    THEN RAISE(ABORT, 'audit invariant violated: success is final')
                END;
        END;
    """)


def init_database() -> None:
    """Create tables, indexes and triggers if missing (idempotent)."""
    with connection_scope(write=True) as conn:
        cursor = conn.cursor()
        create_tables(cursor)
        for statement in INDEX_STATEMENTS:
            cursor.execute(statement)
        create_transaction_invariant_triggers(cursor)
