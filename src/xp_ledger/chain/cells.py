"""Bit-level cells: the ledger's binary storage and message unit.

A :class:`Cell` holds up to :data:`MAX_BITS` data bits (big-endian) and up to
:data:`MAX_REFS` references to child cells.  Cells form a DAG; a cell's
identity is its SHA-256 *representation hash*, computed over its own bits
and the hashes of its children, so two cells with the same content are equal
wherever they come from.

:class:`Builder` appends fields bit by bit and :class:`Slice` reads them
back.  :func:`to_boc` / :func:`from_boc` serialise a cell DAG to bytes
("bag of cells") for transport.

Bag-of-cells layout
-------------------
::

    magic:4 bytes (b5ee9c72) | cell_count:u32 | cell* (topological order, root first)

    cell := refs_count:u8 | bit_length:u16 | data:ceil(bit_length/8) bytes
            | ref_index:u32 * refs_count

Data bytes are left-aligned and zero-padded.  Every ``ref_index`` must point
to a later cell, which makes the encoding acyclic by construction.

Long reference chains (dictionaries are stored as linked cells) are walked
iteratively, never recursively, so a cell DAG's depth is bounded by memory
rather than by the interpreter's recursion limit.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from typing import cast

from xp_ledger.chain.errors import DecodeError, EncodeError

MAX_BITS = 1023
MAX_REFS = 4

BOC_MAGIC = bytes.fromhex("b5ee9c72")


@dataclass(frozen=True, eq=False)
class Cell:
    """Immutable cell: ``length`` data bits plus child references.

    Attributes:
        bits: The data bits as a non-negative integer (most significant bit
            first).
        length: Number of meaningful bits in ``bits``.
        refs: Child cells, in order.
    """

    bits: int = 0
    length: int = 0
    refs: tuple[Cell, ...] = ()
    _digest: bytes | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not 0 <= self.length <= MAX_BITS:
            raise EncodeError(f"cell data length {self.length} outside 0..{MAX_BITS}")
        if self.bits < 0 or self.bits >> self.length:
            raise EncodeError("cell data does not fit its declared bit length")
        if len(self.refs) > MAX_REFS:
            raise EncodeError(f"cell has {len(self.refs)} refs, at most {MAX_REFS} allowed")

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def hash(self) -> bytes:
        """Return the 32-byte representation hash of this cell."""
        if self._digest is None:
            _compute_digests(self)
        return cast(bytes, self._digest)

    def hash_int(self) -> int:
        """Return the representation hash as an unsigned 256-bit integer."""
        return int.from_bytes(self.hash(), "big")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Cell):
            return NotImplemented
        return self.hash() == other.hash()

    def __hash__(self) -> int:
        return int.from_bytes(self.hash()[:8], "big")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        """True when the cell carries no bits and no references."""
        return self.length == 0 and not self.refs

    def data_bytes(self) -> bytes:
        """Return the data bits left-aligned in ``ceil(length / 8)`` bytes."""
        n_bytes = (self.length + 7) // 8
        padding = n_bytes * 8 - self.length
        return (self.bits << padding).to_bytes(n_bytes, "big")

    def begin_parse(self) -> Slice:
        """Open a :class:`Slice` positioned at the first bit and first ref."""
        return Slice(self)


def _cell_digest(cell: Cell) -> bytes:
    hasher = hashlib.sha256()
    hasher.update(len(cell.refs).to_bytes(1, "big"))
    hasher.update(cell.length.to_bytes(2, "big"))
    hasher.update(cell.data_bytes())
    for ref in cell.refs:
        hasher.update(cast(bytes, ref._digest))
    return hasher.digest()


def _compute_digests(root: Cell) -> None:
    # Post-order without recursion: a cell is hashed once all children are.
    stack = [root]
    while stack:
        cell = stack[-1]
        if cell._digest is not None:
            stack.pop()
            continue
        pending = [ref for ref in cell.refs if ref._digest is None]
        if pending:
            stack.extend(pending)
            continue
        stack.pop()
        object.__setattr__(cell, "_digest", _cell_digest(cell))


# =============================================================================
# BUILDER
# =============================================================================


class Builder:
    """Append-only writer producing a :class:`Cell`.

    Every ``store_*`` method returns the builder so calls can be chained::

        cell = begin_cell().store_uint(0x1234, 32).store_uint(0, 4).end_cell()
    """

    def __init__(self) -> None:
        self._bits = 0
        self._length = 0
        self._refs: list[Cell] = []

    @property
    def bits_used(self) -> int:
        return self._length

    @property
    def refs_used(self) -> int:
        return len(self._refs)

    def _append(self, value: int, width: int) -> Builder:
        if self._length + width > MAX_BITS:
            raise EncodeError(
                f"cell overflow: {self._length} + {width} bits exceeds {MAX_BITS}"
            )
        self._bits = (self._bits << width) | value
        self._length += width
        return self

    def store_uint(self, value: int, width: int) -> Builder:
        """Store ``value`` as an unsigned big-endian integer of ``width`` bits."""
        if width < 0:
            raise EncodeError("field width must be non-negative")
        if not 0 <= value < (1 << width):
            raise EncodeError(f"value {value} does not fit in uint{width}")
        return self._append(value, width)

    def store_int(self, value: int, width: int) -> Builder:
        """Store ``value`` as a two's-complement signed integer of ``width`` bits."""
        if width <= 0:
            raise EncodeError("signed field width must be positive")
        low = -(1 << (width - 1))
        high = (1 << (width - 1)) - 1
        if not low <= value <= high:
            raise EncodeError(f"value {value} does not fit in int{width}")
        return self._append(value & ((1 << width) - 1), width)

    def store_bit(self, flag: bool) -> Builder:
        return self._append(1 if flag else 0, 1)

    def store_bytes(self, data: bytes) -> Builder:
        return self._append(int.from_bytes(data, "big"), len(data) * 8) if data else self

    def store_ref(self, cell: Cell) -> Builder:
        if len(self._refs) >= MAX_REFS:
            raise EncodeError(f"cell overflow: more than {MAX_REFS} refs")
        self._refs.append(cell)
        return self

    def store_maybe_ref(self, cell: Cell | None) -> Builder:
        """Store a presence bit followed by an optional reference."""
        if cell is None:
            return self.store_bit(False)
        return self.store_bit(True).store_ref(cell)

    def end_cell(self) -> Cell:
        return Cell(bits=self._bits, length=self._length, refs=tuple(self._refs))


def begin_cell() -> Builder:
    """Return a fresh :class:`Builder`."""
    return Builder()


# =============================================================================
# SLICE
# =============================================================================


class Slice:
    """Sequential reader over a :class:`Cell`.

    Reads past the end raise :class:`~xp_ledger.chain.errors.DecodeError`.
    """

    def __init__(self, cell: Cell) -> None:
        self._cell = cell
        self._pos = 0
        self._ref_pos = 0

    @property
    def remaining_bits(self) -> int:
        return self._cell.length - self._pos

    @property
    def remaining_refs(self) -> int:
        return len(self._cell.refs) - self._ref_pos

    def preload_uint(self, width: int) -> int:
        if width < 0 or width > self.remaining_bits:
            raise DecodeError(
                f"cannot read {width} bits, only {self.remaining_bits} remaining"
            )
        shift = self._cell.length - self._pos - width
        return (self._cell.bits >> shift) & ((1 << width) - 1)

    def load_uint(self, width: int) -> int:
        value = self.preload_uint(width)
        self._pos += width
        return value

    def load_int(self, width: int) -> int:
        value = self.load_uint(width)
        if width and value >> (width - 1):
            value -= 1 << width
        return value

    def load_bit(self) -> bool:
        return bool(self.load_uint(1))

    def load_bytes(self, count: int) -> bytes:
        return self.load_uint(count * 8).to_bytes(count, "big")

    def load_ref(self) -> Cell:
        if self._ref_pos >= len(self._cell.refs):
            raise DecodeError("cannot read reference: no references remaining")
        ref = self._cell.refs[self._ref_pos]
        self._ref_pos += 1
        return ref

    def load_maybe_ref(self) -> Cell | None:
        if self.load_bit():
            return self.load_ref()
        return None

    def end_parse(self) -> None:
        """Assert the slice has been fully consumed."""
        if self.remaining_bits or self.remaining_refs:
            raise DecodeError(
                f"unexpected trailing data: {self.remaining_bits} bits, "
                f"{self.remaining_refs} refs"
            )


# =============================================================================
# BAG OF CELLS
# =============================================================================


def _topological_order(root: Cell) -> list[Cell]:
    """Return distinct cells with every parent before its children."""
    visited: set[bytes] = set()
    postorder: list[Cell] = []
    stack: list[tuple[Cell, bool]] = [(root, False)]
    while stack:
        cell, expanded = stack.pop()
        if expanded:
            postorder.append(cell)
            continue
        digest = cell.hash()
        if digest in visited:
            continue
        visited.add(digest)
        stack.append((cell, True))
        for ref in reversed(cell.refs):
            if ref.hash() not in visited:
                stack.append((ref, False))
    postorder.reverse()
    return postorder


def to_boc(root: Cell) -> bytes:
    """Serialise the DAG rooted at ``root`` into bag-of-cells bytes."""
    order = _topological_order(root)
    index = {cell.hash(): position for position, cell in enumerate(order)}
    out = bytearray(BOC_MAGIC)
    out += len(order).to_bytes(4, "big")
    for cell in order:
        out.append(len(cell.refs))
        out += cell.length.to_bytes(2, "big")
        out += cell.data_bytes()
        for ref in cell.refs:
            out += index[ref.hash()].to_bytes(4, "big")
    return bytes(out)


def from_boc(data: bytes) -> Cell:
    """Parse bag-of-cells bytes produced by :func:`to_boc` and return the root."""
    if len(data) < 8 or data[:4] != BOC_MAGIC:
        raise DecodeError("not a bag of cells: bad magic")
    count = int.from_bytes(data[4:8], "big")
    if count == 0:
        raise DecodeError("bag of cells contains no cells")

    raw: list[tuple[int, int, tuple[int, ...]]] = []
    pos = 8
    for position in range(count):
        if pos + 3 > len(data):
            raise DecodeError("bag of cells truncated in cell header")
        refs_count = data[pos]
        length = int.from_bytes(data[pos + 1 : pos + 3], "big")
        pos += 3
        if refs_count > MAX_REFS or length > MAX_BITS:
            raise DecodeError(f"cell {position} exceeds cell limits")
        n_bytes = (length + 7) // 8
        chunk = data[pos : pos + n_bytes]
        if len(chunk) != n_bytes:
            raise DecodeError("bag of cells truncated in cell data")
        pos += n_bytes
        padding = n_bytes * 8 - length
        value = int.from_bytes(chunk, "big") if chunk else 0
        if padding and value & ((1 << padding) - 1):
            raise DecodeError(f"cell {position} has non-zero padding bits")
        refs: list[int] = []
        for _ in range(refs_count):
            if pos + 4 > len(data):
                raise DecodeError("bag of cells truncated in reference list")
            ref_index = int.from_bytes(data[pos : pos + 4], "big")
            pos += 4
            if not position < ref_index < count:
                raise DecodeError(f"cell {position} has invalid reference {ref_index}")
            refs.append(ref_index)
        raw.append((value >> padding, length, tuple(refs)))
    if pos != len(data):
        raise DecodeError("unexpected trailing bytes after bag of cells")

    cells: list[Cell | None] = [None] * count
    for position in range(count - 1, -1, -1):
        value, length, ref_indices = raw[position]
        children = tuple(cells[i] for i in ref_indices)
        cells[position] = Cell(bits=value, length=length, refs=children)  # type: ignore[arg-type]
    return cast(Cell, cells[0])


def to_boc_base64(root: Cell) -> str:
    return base64.b64encode(to_boc(root)).decode("ascii")


def from_boc_base64(text: str) -> Cell:
    try:
        data = base64.b64decode(text, validate=True)
    except (ValueError, TypeError) as exc:
        raise DecodeError(f"invalid base64 bag of cells: {exc}") from exc
    return from_boc(data)
