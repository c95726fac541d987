"""Submit-and-reconcile loop for batches of AddXP operations."""

from xp_ledger.reconcile.engine import BatchAbortedError, ReconciliationEngine
from xp_ledger.reconcile.types import (
    ALLOWED_TRANSITIONS,
    Attempt,
    AttemptState,
    BatchReport,
    ContractSnapshot,
    Operation,
    PollOutcome,
    Target,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Attempt",
    "AttemptState",
    "BatchAbortedError",
    "BatchReport",
    "ContractSnapshot",
    "Operation",
    "PollOutcome",
    "ReconciliationEngine",
    "Target",
]
