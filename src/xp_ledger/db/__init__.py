"""SQLite audit store: users, transaction attempts and their invariants."""

from xp_ledger.db.audit import AuditStore
from xp_ledger.db.errors import (
    AuditInvariantError,
    DatabaseError,
    DatabaseReadError,
    DatabaseWriteError,
)
from xp_ledger.db.schema import init_database

__all__ = [
    "AuditInvariantError",
    "AuditStore",
    "DatabaseError",
    "DatabaseReadError",
    "DatabaseWriteError",
    "init_database",
]
