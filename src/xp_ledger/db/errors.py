"""Typed exceptions for the audit store.

Repositories raise these for infrastructure failures (SQLite unavailable,
locked, corrupt) so the reconciliation engine can tell "the audit write
failed" apart from domain outcomes such as "no such user", which are still
returned as ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class DatabaseOperationContext:
    """Structured operation metadata carried by repository exceptions.

    Attributes:
        operation: Stable operation identifier (for example
            ``"transactions.insert_pending"``).
        details: Optional human-readable context for logs.
    """

    operation: str
    details: str | None = None


class DatabaseError(RuntimeError):
    """Base exception for audit store failures."""


class DatabaseOperationError(DatabaseError):
    """A repository operation failed.

    Args:
        context: Structured operation metadata.
        cause: Underlying exception, if any.
    """

    def __init__(
        self,
        *,
        context: DatabaseOperationContext,
        cause: Exception | None = None,
    ) -> None:
        message = context.operation
        if context.details:
            message = f"{message}: {context.details}"
        super().__init__(message)
        self.context = context
        self.cause = cause


class DatabaseReadError(DatabaseOperationError):
    """Query failure."""


class DatabaseWriteError(DatabaseOperationError):
    """Insert/update failure."""


class AuditInvariantError(DatabaseWriteError):
    """A schema trigger refused the write (immutable column or terminal status)."""
