"""Engine-facing audit store facade.

The reconciliation engine talks to the repositories only through
:class:`AuditStore`.  Each write is attempted once more on an infrastructure
failure, so "create-or-find user" and "append transaction row" either land
or surface as :class:`DatabaseWriteError` after two tries.  Trigger aborts
(:class:`AuditInvariantError`) are never retried: repeating the write cannot
succeed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from xp_ledger.db import transactions_repo, users_repo
from xp_ledger.db.errors import AuditInvariantError, DatabaseWriteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuditStore:
    """Thin write-retrying wrapper over the user and transaction repositories."""

    def __init__(self, *, write_retries: int = 1) -> None:
        self.write_retries = write_retries

    def _write(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except AuditInvariantError:
                raise
            except DatabaseWriteError as exc:
                if attempt >= self.write_retries:
                    raise
                attempt += 1
                logger.warning("Audit write %s failed (%s); retrying", operation, exc)

    # ── Users ─────────────────────────────────────────────────────────────────

    def ensure_user(self, address: str, public_key: str | None = None) -> int:
        return self._write(
            "ensure_user", users_repo.get_or_create_user, address, public_key=public_key
        )

    def update_xp(self, user_id: int, xp: int) -> bool:
        return self._write("update_xp", users_repo.update_user_xp, user_id, xp)

    # ── Transactions ──────────────────────────────────────────────────────────

    def record_pending(self, **row: Any) -> int:
        return self._write("record_pending", transactions_repo.insert_pending, **row)

    def record_success(self, op_id: int, **evidence: Any) -> bool:
        return self._write("record_success", transactions_repo.mark_success, op_id, **evidence)

    def record_failure(self, op_id: int, description: str, **evidence: Any) -> bool:
        return self._write(
            "record_failure", transactions_repo.mark_failed, op_id, description, **evidence
        )

    def backfill_tx_hash(self, op_id: int, tx_hash: str) -> bool:
        return self._write("backfill_tx_hash", transactions_repo.set_tx_hash, op_id, tx_hash)

    def get_transaction(self, op_id: int) -> dict[str, Any] | None:
        return transactions_repo.get_transaction(op_id)
