"""Ledger account addresses.

An address is a signed 8-bit workchain id plus a 256-bit account hash.  On
the wire it uses the standard internal-address layout::

    tag:2 = 0b10 | anycast:1 = 0 | workchain:int8 | hash:256      (267 bits)

An absent address is ``tag:2 = 0b00``.  Addresses are written as
``"<workchain>:<64 hex chars>"`` (raw form), which is also what the audit
store keeps in its ``address`` columns.
"""

from __future__ import annotations

from dataclasses import dataclass

from xp_ledger.chain.cells import Builder, Cell, Slice, begin_cell
from xp_ledger.chain.errors import DecodeError

ADDRESS_BITS = 267

_TAG_NONE = 0b00
_TAG_STD = 0b10


@dataclass(frozen=True)
class Address:
    """Standard ledger address.

    Attributes:
        workchain: Workchain id (-128..127); ``0`` for ordinary accounts.
        hash_part: 32-byte account hash.
    """

    workchain: int
    hash_part: bytes

    def __post_init__(self) -> None:
        if not -128 <= self.workchain <= 127:
            raise ValueError(f"workchain {self.workchain} outside int8 range")
        if len(self.hash_part) != 32:
            raise ValueError("address hash must be exactly 32 bytes")

    @classmethod
    def parse(cls, text: str) -> Address:
        """Parse the raw ``"<workchain>:<hex>"`` form.

        Raises:
            ValueError: If the text is not a valid raw address.
        """
        workchain_text, sep, hash_text = text.strip().partition(":")
        if not sep:
            raise ValueError(f"invalid address {text!r}: expected '<workchain>:<hex>'")
        try:
            workchain = int(workchain_text)
            hash_part = bytes.fromhex(hash_text)
        except ValueError as exc:
            raise ValueError(f"invalid address {text!r}: {exc}") from exc
        return cls(workchain=workchain, hash_part=hash_part)

    def to_cell(self) -> Cell:
        """Return a cell holding only this address."""
        return store_address(begin_cell(), self).end_cell()

    def canonical_hash(self) -> int:
        """Stable 256-bit key for this address (hash of its encoded cell).

        The ledger compares identities and keys balances by this value, never
        by the raw textual or binary encoding.
        """
        return self.to_cell().hash_int()

    def short(self) -> str:
        """Abbreviated form for log lines: ``0:abcd12…89ef``."""
        hex_part = self.hash_part.hex()
        return f"{self.workchain}:{hex_part[:6]}…{hex_part[-4:]}"

    def __str__(self) -> str:
        return f"{self.workchain}:{self.hash_part.hex()}"


def store_address(builder: Builder, address: Address | None) -> Builder:
    """Append ``address`` (or the absent-address tag for ``None``)."""
    if address is None:
        return builder.store_uint(_TAG_NONE, 2)
    return (
        builder.store_uint(_TAG_STD, 2)
        .store_bit(False)
        .store_int(address.workchain, 8)
        .store_bytes(address.hash_part)
    )


def _load_maybe_address(source: Slice) -> Address | None:
    """Read an address that may be absent."""
    tag = source.load_uint(2)
    if tag == _TAG_NONE:
        return None
    if tag != _TAG_STD:
        raise DecodeError(f"unsupported address tag {tag:#04b}")
    if source.load_bit():
        raise DecodeError("anycast addresses are not supported")
    workchain = source.load_int(8)
    return Address(workchain=workchain, hash_part=source.load_bytes(32))


def load_address(source: Slice) -> Address:
    """Read a mandatory address."""
    address = _load_maybe_address(source)
    if address is None:
        raise DecodeError("expected an address, found the absent-address tag")
    return address
