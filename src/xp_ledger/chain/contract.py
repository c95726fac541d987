"""The XP ledger program: a pure state machine over :class:`StorageRoot`.

The ledger node hands every inbound message to :func:`apply` together with
the sender and the block time.  :func:`apply` never mutates its input; it
returns the next state (or the same object when the message is rejected)
and an :class:`ApplyResult` carrying the exit code.

States
------
``None`` (uninitialized) becomes a :class:`StorageRoot` on the first
delivered message, whatever its body: the sender becomes the owner,
``version = 1`` and ``last_op_time = 0``.  After that every accepted message
produces a new root; nothing ever deletes storage.

Write rules
-----------
Checks run in this order and the first failure wins:

1. ``NotOwner``: sender's canonical hash differs from the owner's.
2. ``TooSoon``: ``last_op_time > 0`` and ``now - last_op_time <
   min_cooldown``.  The cooldown is global: one write per window for the
   whole ledger, not per user.
3. ``Overflow``: the new balance would exceed ``2**64 - 1``.
4. ``DuplicateOp``: the opId is already in the user's retained history.

History is a fixed-capacity ring per user: once ``max_history`` entries are
held, appending evicts the oldest.  Anti-replay therefore covers the last
``max_history`` operations of each user.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import cast

from xp_ledger.chain.address import Address, load_address
from xp_ledger.chain.cells import Cell, begin_cell
from xp_ledger.chain.codec import (
    U16_MAX,
    U64_MAX,
    AddXP,
    AddXPWithId,
    HistoryEntry,
    Initialize,
    Message,
    StackItem,
    StorageRoot,
    Upgrade,
    decode_message,
    encode_history_map,
)
from xp_ledger.chain.errors import (
    DecodeError,
    DuplicateOpError,
    ExitCode,
    InvalidArgumentError,
    InvalidOpError,
    NotOwnerError,
    ProtocolError,
    TooSoonError,
    XPOverflowError,
)

# ── Defaults ──────────────────────────────────────────────────────────────────
MIN_COOLDOWN = 10  # seconds between accepted writes, ledger-wide
MAX_HISTORY = 32  # retained operations per user

LEVEL_THRESHOLDS = (100, 250, 500)


@dataclass(frozen=True)
class ContractParams:
    """Deployment-time constants of the program."""

    min_cooldown: int = MIN_COOLDOWN
    max_history: int = MAX_HISTORY

    def __post_init__(self) -> None:
        if self.min_cooldown < 0:
            raise ValueError("min_cooldown must be non-negative")
        if self.max_history < 1:
            raise ValueError("max_history must be at least 1")


DEFAULT_PARAMS = ContractParams()


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of delivering one message.

    Attributes:
        exit_code: ``0`` when accepted, otherwise an :class:`ExitCode`.
        action: What happened: ``initialize``, ``add_xp``, ``upgrade``,
            ``noop`` or ``rejected``.
        new_code: Replacement program for an accepted upgrade.
        error: Human-readable reason for a rejection.
    """

    exit_code: int = ExitCode.OK
    action: str = "noop"
    new_code: Cell | None = None
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.exit_code == ExitCode.OK


def code_cell(tag: str = "xp-ledger/1") -> Cell:
    """Return a program cell identified by ``tag``."""
    return begin_cell().store_bytes(tag.encode("utf-8")).end_cell()


DEFAULT_CODE = code_cell()


def initial_state(owner: Address) -> StorageRoot:
    return StorageRoot(owner=owner, version=1, last_op_time=0)


# =============================================================================
# TRANSITIONS
# =============================================================================


def apply(
    state: StorageRoot | None,
    body: Cell,
    *,
    sender: Address,
    now: int,
    params: ContractParams = DEFAULT_PARAMS,
) -> tuple[StorageRoot | None, ApplyResult]:
    """Deliver one message body and return ``(next_state, result)``.

    Rejections never raise: they come back as a non-zero ``exit_code`` with
    ``next_state`` identical to ``state``.
    """
    if state is None:
        return initial_state(sender), ApplyResult(action="initialize")

    try:
        message = decode_message(body)
    except DecodeError as exc:
        return state, _rejected(InvalidOpError(f"malformed message: {exc}"))
    except ProtocolError as exc:
        return state, _rejected(exc)

    try:
        return apply_message(state, message, sender=sender, now=now, params=params)
    except ProtocolError as exc:
        return state, _rejected(exc)


def apply_message(
    state: StorageRoot,
    message: Message,
    *,
    sender: Address,
    now: int,
    params: ContractParams = DEFAULT_PARAMS,
) -> tuple[StorageRoot, ApplyResult]:
    """Apply an already-decoded message to initialized storage.

    Raises:
        ProtocolError: The message is rejected.
    """
    if isinstance(message, Initialize):
        return state, ApplyResult(action="noop")
    if isinstance(message, AddXPWithId):
        return _add_xp(state, sender, message.user, message.amount, message.op_id, now, params)
    if isinstance(message, AddXP):
        return _add_xp(state, sender, message.user, message.amount, None, now, params)
    if isinstance(message, Upgrade):
        return _upgrade(state, sender, message.new_code)
    raise InvalidOpError(f"unsupported message {type(message).__name__}")


def _rejected(exc: ProtocolError) -> ApplyResult:
    return ApplyResult(exit_code=exc.exit_code, action="rejected", error=str(exc))


def _require_owner(state: StorageRoot, sender: Address) -> None:
    if sender.canonical_hash() != state.owner.canonical_hash():
        raise NotOwnerError(f"sender {sender} is not the ledger owner")


def _add_xp(
    state: StorageRoot,
    sender: Address,
    user: Address,
    amount: int,
    op_id: int | None,
    now: int,
    params: ContractParams,
) -> tuple[StorageRoot, ApplyResult]:
    _require_owner(state, sender)

    if state.last_op_time > 0 and now - state.last_op_time < params.min_cooldown:
        raise TooSoonError(
            f"{now - state.last_op_time}s since last write, cooldown is {params.min_cooldown}s"
        )

    key = user.canonical_hash()
    old = state.balances.get(key, 0)
    new = old + amount
    if new < old or new > U64_MAX:
        raise XPOverflowError(f"balance {old} + {amount} exceeds the 64-bit range")

    history = dict(state.history)
    if op_id is not None:
        entries = state.history.get(key, ())
        if any(entry.op_id == op_id for entry in entries):
            raise DuplicateOpError(f"opId {op_id:#x} already applied for {user}")
        entry = HistoryEntry(amount=amount, timestamp=now, op_id=op_id)
        history[key] = append_bounded(entries, entry, params.max_history)

    next_state = replace(
        state,
        last_op_time=now,
        balances={**state.balances, key: new},
        history=history,
    )
    return next_state, ApplyResult(action="add_xp")


def _upgrade(
    state: StorageRoot, sender: Address, new_code: Cell
) -> tuple[StorageRoot, ApplyResult]:
    _require_owner(state, sender)
    if state.version >= U16_MAX:
        raise XPOverflowError("version counter exhausted")
    next_state = replace(state, version=state.version + 1)
    return next_state, ApplyResult(action="upgrade", new_code=new_code)


def append_bounded(
    entries: Sequence[HistoryEntry], entry: HistoryEntry, capacity: int
) -> tuple[HistoryEntry, ...]:
    """Append ``entry`` and drop the oldest entries beyond ``capacity``."""
    combined = (*entries, entry)
    return combined[-capacity:]


# =============================================================================
# QUERIES
# =============================================================================


def get_xp_key(user: Address) -> int:
    return user.canonical_hash()


def get_xp(state: StorageRoot | None, user: Address) -> int:
    if state is None:
        return 0
    return state.balances.get(get_xp_key(user), 0)


def get_user_history(state: StorageRoot | None, user: Address) -> tuple[HistoryEntry, ...]:
    if state is None:
        return ()
    return state.history.get(get_xp_key(user), ())


def _require_initialized(state: StorageRoot | None) -> StorageRoot:
    if state is None:
        raise InvalidOpError("ledger storage is not initialized")
    return state


def get_owner(state: StorageRoot | None) -> Address:
    return _require_initialized(state).owner


def get_version(state: StorageRoot | None) -> int:
    return _require_initialized(state).version


def get_last_op_time(state: StorageRoot | None) -> int:
    return _require_initialized(state).last_op_time


# =============================================================================
# DERIVED SCORES
# =============================================================================


def _require_non_negative(**values: int) -> None:
    for name, value in values.items():
        if value < 0:
            raise InvalidArgumentError(f"{name} must be non-negative, got {value}")


def get_level(xp: int) -> int:
    """Level 0-3 from XP: thresholds at 100, 250 and 500."""
    _require_non_negative(xp=xp)
    return sum(1 for threshold in LEVEL_THRESHOLDS if xp >= threshold)


def get_rank(xp: int) -> int:
    """Rank currently follows the level table exactly."""
    return get_level(xp)


def get_reputation(xp: int, days_active: int, rating: int, behavior_weight: int) -> int:
    """Reputation score clamped to 0..100.

    ``xp / 10 + days_active * 2 + rating * 5 - behavior_weight * 10 + 18``;
    all inputs are non-negative so floor division equals truncation.
    """
    _require_non_negative(
        xp=xp, days_active=days_active, rating=rating, behavior_weight=behavior_weight
    )
    score = xp // 10 + days_active * 2 + rating * 5 - behavior_weight * 10 + 18
    return max(0, min(100, score))


# =============================================================================
# GET-METHOD DISPATCH
# =============================================================================


def _arg_num(args: Sequence[StackItem], index: int) -> int:
    if index >= len(args) or args[index].kind != "num":
        raise InvalidOpError(f"argument {index} must be a number")
    return cast(int, args[index].value)


def _arg_address(args: Sequence[StackItem], index: int) -> Address:
    if index >= len(args) or args[index].kind not in ("slice", "cell"):
        raise InvalidOpError(f"argument {index} must be an address slice")
    cell = cast(Cell, args[index].value)
    try:
        return load_address(cell.begin_parse())
    except DecodeError as exc:
        raise InvalidOpError(f"argument {index} is not an address: {exc}") from exc


def _history_result(state: StorageRoot | None, args: Sequence[StackItem]) -> list[StackItem]:
    entries = get_user_history(state, _arg_address(args, 0))
    if not entries:
        return [StackItem.null()]
    return [StackItem.cell(encode_history_map(entries))]


GetMethod = Callable[[StorageRoot | None, Sequence[StackItem]], list[StackItem]]

GET_METHODS: dict[str, GetMethod] = {
    "get_xp": lambda s, a: [StackItem.num(get_xp(s, _arg_address(a, 0)))],
    "get_xp_key": lambda s, a: [StackItem.num(get_xp_key(_arg_address(a, 0)))],
    "get_user_history": _history_result,
    "get_owner": lambda s, a: [StackItem.address(get_owner(s))],
    "get_version": lambda s, a: [StackItem.num(get_version(s))],
    "get_last_op_time": lambda s, a: [StackItem.num(get_last_op_time(s))],
    "get_level": lambda s, a: [StackItem.num(get_level(_arg_num(a, 0)))],
    "get_rank": lambda s, a: [StackItem.num(get_rank(_arg_num(a, 0)))],
    "get_reputation": lambda s, a: [
        StackItem.num(
            get_reputation(_arg_num(a, 0), _arg_num(a, 1), _arg_num(a, 2), _arg_num(a, 3))
        )
    ],
}


def run_get_method(
    state: StorageRoot | None, method: str, args: Sequence[StackItem]
) -> list[StackItem]:
    """Run a read-only query by name.

    Raises:
        InvalidOpError: Unknown method or badly typed arguments.
        InvalidArgumentError: Negative input to a derived-score formula.
    """
    handler = GET_METHODS.get(method)
    if handler is None:
        raise InvalidOpError(f"unknown get method {method!r}")
    return handler(state, args)
