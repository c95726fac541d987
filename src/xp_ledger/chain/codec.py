"""Binary layouts for ledger messages, storage and get-method stacks.

Everything in this module is a pure transformation between Python values and
cells: no validation beyond "does it fit the layout", no business rules.

Message bodies
--------------
::

    AddXP        opcode:32 = 0x1234 | flags:4 = 0 | user:address | amount:64
    AddXPWithId  opcode:32 = 0x5678 | flags:4 = 0 | user:address | amount:64 | op_id:256
    Upgrade      opcode:32 = 0x8765 | ^new_code
    Initialize   (empty body)

Storage root
------------
::

    owner:address | version:16 | last_op_time:64 | balances:Map | history:Map

    balances  Map(key:256 = address hash, value: xp:64)
    history   Map(key:256 = address hash, value: ^Map(key:256 = op_id, value: HistoryEntry))

    HistoryEntry  amount:64 | timestamp:64 | op_id:256

Maps
----
A map is a presence bit followed, when set, by a reference to a chain of
node cells.  Each node stores ``key | value | has_next:1`` and references the
next node last, after any references the value itself uses::

    Map   := 0                    (empty)
           | 1 ^Node
    Node  := key value has_next:1 [^Node]

Entry order is preserved, so ``decode(encode(x)) == x`` holds for ordered
collections such as the bounded per-user history.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar, cast

from xp_ledger.chain.address import Address, load_address, store_address
from xp_ledger.chain.cells import (
    Builder,
    Cell,
    Slice,
    begin_cell,
    from_boc_base64,
    to_boc_base64,
)
from xp_ledger.chain.errors import DecodeError, InvalidOpError

# ── Opcodes ───────────────────────────────────────────────────────────────────
OP_ADD_XP = 0x1234
OP_ADD_XP_WITH_ID = 0x5678
OP_UPGRADE = 0x8765

U16_MAX = (1 << 16) - 1
U64_MAX = (1 << 64) - 1
U256_MAX = (1 << 256) - 1

V = TypeVar("V")


# =============================================================================
# MESSAGES
# =============================================================================


@dataclass(frozen=True)
class Initialize:
    """Empty-body message; initializes storage on first delivery."""


@dataclass(frozen=True)
class AddXP:
    """Add ``amount`` XP to ``user`` without recording a history entry."""

    user: Address
    amount: int


@dataclass(frozen=True)
class AddXPWithId:
    """Add ``amount`` XP to ``user`` under the idempotency key ``op_id``."""

    user: Address
    amount: int
    op_id: int


@dataclass(frozen=True)
class Upgrade:
    """Replace the ledger program with ``new_code``."""

    new_code: Cell


Message = Initialize | AddXP | AddXPWithId | Upgrade


def encode_message(message: Message) -> Cell:
    """Encode a message body.

    Raises:
        EncodeError: If a field does not fit its width.
        TypeError: If ``message`` is not one of the message types.
    """
    if isinstance(message, Initialize):
        return Cell()
    if isinstance(message, AddXPWithId):
        builder = begin_cell().store_uint(OP_ADD_XP_WITH_ID, 32).store_uint(0, 4)
        store_address(builder, message.user)
        return builder.store_uint(message.amount, 64).store_uint(message.op_id, 256).end_cell()
    if isinstance(message, AddXP):
        builder = begin_cell().store_uint(OP_ADD_XP, 32).store_uint(0, 4)
        store_address(builder, message.user)
        return builder.store_uint(message.amount, 64).end_cell()
    if isinstance(message, Upgrade):
        return begin_cell().store_uint(OP_UPGRADE, 32).store_ref(message.new_code).end_cell()
    raise TypeError(f"not a ledger message: {message!r}")


def decode_message(body: Cell) -> Message:
    """Decode a message body into its tagged variant.

    Raises:
        InvalidOpError: The body is too short for an opcode or the opcode is
            unknown.
        DecodeError: The opcode is known but the body does not match its
            layout.
    """
    if body.is_empty:
        return Initialize()

    source = body.begin_parse()
    if source.remaining_bits < 32:
        raise InvalidOpError("message body is shorter than an opcode")
    opcode = source.load_uint(32)

    if opcode in (OP_ADD_XP, OP_ADD_XP_WITH_ID):
        flags = source.load_uint(4)
        if flags != 0:
            raise DecodeError(f"unsupported AddXP flags {flags:#x}")
        user = load_address(source)
        amount = source.load_uint(64)
        if opcode == OP_ADD_XP_WITH_ID:
            op_id = source.load_uint(256)
            source.end_parse()
            return AddXPWithId(user=user, amount=amount, op_id=op_id)
        source.end_parse()
        return AddXP(user=user, amount=amount)

    if opcode == OP_UPGRADE:
        new_code = source.load_ref()
        source.end_parse()
        return Upgrade(new_code=new_code)

    raise InvalidOpError(f"unknown opcode {opcode:#x}")


# =============================================================================
# MAPS
# =============================================================================


def store_map(
    builder: Builder,
    items: Iterable[tuple[int, V]],
    key_bits: int,
    store_value: Callable[[Builder, V], Any],
) -> Builder:
    """Append an ordered map (see module docstring for the layout)."""
    entries = list(items)
    if not entries:
        return builder.store_bit(False)
    node: Cell | None = None
    # Built tail-first so every node can reference the one after it.
    for key, value in reversed(entries):
        node_builder = begin_cell().store_uint(key, key_bits)
        store_value(node_builder, value)
        node = node_builder.store_maybe_ref(node).end_cell()
    return builder.store_bit(True).store_ref(cast(Cell, node))


def load_map(
    source: Slice,
    key_bits: int,
    load_value: Callable[[Slice], V],
) -> list[tuple[int, V]]:
    """Read an ordered map written by :func:`store_map`.

    Raises:
        DecodeError: On malformed nodes or repeated keys.
    """
    if not source.load_bit():
        return []
    entries: list[tuple[int, V]] = []
    seen: set[int] = set()
    node: Cell | None = source.load_ref()
    while node is not None:
        node_source = node.begin_parse()
        key = node_source.load_uint(key_bits)
        if key in seen:
            raise DecodeError(f"duplicate map key {key:#x}")
        seen.add(key)
        value = load_value(node_source)
        node = node_source.load_maybe_ref()
        node_source.end_parse()
        entries.append((key, value))
    return entries


# =============================================================================
# HISTORY
# =============================================================================


@dataclass(frozen=True)
class HistoryEntry:
    """One applied operation in a user's history."""

    amount: int
    timestamp: int
    op_id: int


def store_history_entry(builder: Builder, entry: HistoryEntry) -> Builder:
    return (
        builder.store_uint(entry.amount, 64)
        .store_uint(entry.timestamp, 64)
        .store_uint(entry.op_id, 256)
    )


def load_history_entry(source: Slice) -> HistoryEntry:
    return HistoryEntry(
        amount=source.load_uint(64),
        timestamp=source.load_uint(64),
        op_id=source.load_uint(256),
    )


def encode_history_entry(entry: HistoryEntry) -> Cell:
    return store_history_entry(begin_cell(), entry).end_cell()


def decode_history_entry(cell: Cell) -> HistoryEntry:
    source = cell.begin_parse()
    entry = load_history_entry(source)
    source.end_parse()
    return entry


def encode_history_map(entries: Sequence[HistoryEntry]) -> Cell:
    """Encode one user's history (oldest first) as a standalone map cell."""
    return store_map(
        begin_cell(),
        ((entry.op_id, entry) for entry in entries),
        256,
        store_history_entry,
    ).end_cell()


def decode_history_map(cell: Cell) -> tuple[HistoryEntry, ...]:
    source = cell.begin_parse()
    entries = load_map(source, 256, load_history_entry)
    source.end_parse()
    for op_id, entry in entries:
        if op_id != entry.op_id:
            raise DecodeError(f"history key {op_id:#x} does not match entry op_id")
    return tuple(entry for _, entry in entries)


# =============================================================================
# STORAGE ROOT
# =============================================================================


@dataclass(frozen=True)
class StorageRoot:
    """Persistent ledger storage.

    Attributes:
        owner: The single privileged writer.
        version: Program version, incremented by each upgrade.
        last_op_time: Unix time of the last accepted write (``0`` = never).
        balances: Address hash -> XP total.
        history: Address hash -> that user's operations, oldest first.
    """

    owner: Address
    version: int = 1
    last_op_time: int = 0
    balances: dict[int, int] = field(default_factory=dict)
    history: dict[int, tuple[HistoryEntry, ...]] = field(default_factory=dict)


def _store_history_ref(builder: Builder, entries: tuple[HistoryEntry, ...]) -> Builder:
    return builder.store_ref(encode_history_map(entries))


def _load_history_ref(source: Slice) -> tuple[HistoryEntry, ...]:
    return decode_history_map(source.load_ref())


def encode_storage(root: StorageRoot) -> Cell:
    builder = begin_cell()
    store_address(builder, root.owner)
    builder.store_uint(root.version, 16).store_uint(root.last_op_time, 64)
    store_map(builder, root.balances.items(), 256, lambda b, xp: b.store_uint(xp, 64))
    store_map(builder, root.history.items(), 256, _store_history_ref)
    return builder.end_cell()


def decode_storage(cell: Cell) -> StorageRoot | None:
    """Decode storage; an empty cell means the ledger is uninitialized."""
    if cell.is_empty:
        return None
    source = cell.begin_parse()
    owner = load_address(source)
    version = source.load_uint(16)
    last_op_time = source.load_uint(64)
    balances = dict(load_map(source, 256, lambda s: s.load_uint(64)))
    history = dict(load_map(source, 256, _load_history_ref))
    source.end_parse()
    return StorageRoot(
        owner=owner,
        version=version,
        last_op_time=last_op_time,
        balances=balances,
        history=history,
    )


# =============================================================================
# GET-METHOD STACK
# =============================================================================

StackKind = Literal["num", "cell", "slice", "null"]


@dataclass(frozen=True)
class StackItem:
    """One typed value on a get-method argument or result stack."""

    kind: StackKind
    value: int | Cell | None = None

    @classmethod
    def num(cls, value: int) -> StackItem:
        return cls("num", int(value))

    @classmethod
    def cell(cls, value: Cell) -> StackItem:
        return cls("cell", value)

    @classmethod
    def slice(cls, value: Cell) -> StackItem:
        return cls("slice", value)

    @classmethod
    def null(cls) -> StackItem:
        return cls("null", None)

    @classmethod
    def address(cls, address: Address) -> StackItem:
        return cls("slice", address.to_cell())

    def to_json(self) -> list[Any]:
        """Render as ``[kind, value]`` with numbers in hex and cells in base64."""
        if self.kind == "num":
            return ["num", hex(cast(int, self.value))]
        if self.kind in ("cell", "slice"):
            return [self.kind, to_boc_base64(cast(Cell, self.value))]
        return ["null", None]

    @classmethod
    def from_json(cls, raw: Any) -> StackItem:
        if not isinstance(raw, (list, tuple)) or len(raw) != 2:
            raise DecodeError(f"malformed stack entry: {raw!r}")
        kind, value = raw
        if kind == "num":
            if not isinstance(value, str):
                raise DecodeError(f"stack number must be a hex string, got {value!r}")
            try:
                return cls.num(int(value, 16))
            except ValueError as exc:
                raise DecodeError(f"invalid stack number {value!r}") from exc
        if kind in ("cell", "slice"):
            if not isinstance(value, str):
                raise DecodeError(f"stack {kind} must be base64 text")
            return cls(kind, from_boc_base64(value))
        if kind == "null":
            return cls.null()
        raise DecodeError(f"unknown stack entry kind {kind!r}")


def stack_to_json(items: Sequence[StackItem]) -> list[list[Any]]:
    return [item.to_json() for item in items]


def stack_from_json(raw: Any) -> list[StackItem]:
    if not isinstance(raw, list):
        raise DecodeError(f"stack must be a list, got {type(raw).__name__}")
    return [StackItem.from_json(entry) for entry in raw]
