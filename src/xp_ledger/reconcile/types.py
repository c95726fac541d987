"""State and result types for the reconciliation engine.

The engine drives one :class:`Operation` per target user through a small
finite-state machine::

    IDLE ──> SUBMITTED ──> POLLING ──> CONFIRMED
                 ^            │
                 │            ├──> ESCALATED ──> SUBMITTED (second attempt)
                 │            │
                 └────────────┴──> FAILED

Every submission inside an operation is an :class:`Attempt` with its own
opId, fee and audit row.  An operation has at most two attempts: the
original and one escalated retry.  A history backfill can confirm an operation
from ``SUBMITTED`` or ``ESCALATED`` when an earlier attempt turns out to
have landed after all.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from xp_ledger.chain.address import Address
from xp_ledger.client import SentMessage


class AttemptState(Enum):
    """Lifecycle states of an :class:`Operation`."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    ESCALATED = "escalated"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[AttemptState, frozenset[AttemptState]] = {
    AttemptState.IDLE: frozenset({AttemptState.SUBMITTED, AttemptState.FAILED}),
    AttemptState.SUBMITTED: frozenset(
        {AttemptState.POLLING, AttemptState.CONFIRMED, AttemptState.FAILED}
    ),
    AttemptState.POLLING: frozenset(
        {AttemptState.CONFIRMED, AttemptState.ESCALATED, AttemptState.FAILED}
    ),
    AttemptState.ESCALATED: frozenset(
        {AttemptState.SUBMITTED, AttemptState.CONFIRMED, AttemptState.FAILED}
    ),
    AttemptState.CONFIRMED: frozenset(),
    AttemptState.FAILED: frozenset(),
}


class PollOutcome(Enum):
    """How the confirmation wait for one attempt ended."""

    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    STALLED = "stalled"


@dataclass(frozen=True)
class Target:
    """One user to credit.

    Attributes:
        address: Ledger address of the user.
        amount: XP to add.
        label: Free-form name for logs (wallet id, username).
        public_key: Raw public key, stored on the user row when known.
    """

    address: Address
    amount: int
    label: str = ""
    public_key: bytes | None = None

    @property
    def name(self) -> str:
        return self.label or self.address.short()


@dataclass(frozen=True)
class ContractSnapshot:
    """Contract facts gathered before the batch; copied into every audit row."""

    address: Address
    owner: Address
    version: int
    last_op_time: int
    wallet_balance: int


@dataclass
class Attempt:
    """One submission of AddXP under its own opId."""

    number: int
    op_id: int
    fee: int
    poll_checks: int
    status: str = "pending"
    sent: SentMessage | None = None
    tx_hash: str | None = None
    exit_code: int | None = None
    description: str | None = None
    outcome: PollOutcome | None = None
    min_lt: int = 0

    @property
    def op_id_hex(self) -> str:
        return format(self.op_id, "064x")


@dataclass
class Operation:
    """Everything the engine did for one target."""

    target: Target
    state: AttemptState = AttemptState.IDLE
    transitions: list[AttemptState] = field(default_factory=lambda: [AttemptState.IDLE])
    attempts: list[Attempt] = field(default_factory=list)
    user_id: int | None = None
    before_xp: int = 0
    after_xp: int | None = None
    error: str | None = None
    abort_batch: bool = False

    def advance(self, state: AttemptState) -> None:
        """Move to ``state``; raises ``RuntimeError`` on an illegal transition."""
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    def fail(self, error: str) -> None:
        self.error = error
        if self.state is not AttemptState.FAILED:
            self.advance(AttemptState.FAILED)

    @property
    def succeeded(self) -> bool:
        return any(attempt.status == "success" for attempt in self.attempts)

    @property
    def op_ids(self) -> list[str]:
        return [attempt.op_id_hex for attempt in self.attempts]


@dataclass
class BatchReport:
    """Result of one engine run."""

    started_at: float
    finished_at: float | None = None
    snapshot: ContractSnapshot | None = None
    operations: list[Operation] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False
    reason: str | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for op in self.operations if op.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for op in self.operations if not op.succeeded)
