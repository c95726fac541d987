"""Signing identities and the signed message envelope.

A :class:`Wallet` is an Ed25519 key pair.  Its ledger address is derived from
the public key (``sha256(public_key)`` on the chosen workchain), so anyone
holding a :class:`SignedMessage` can check both that the signature is valid
and that the claimed sender really owns the key.

Envelope layout (hashed and signed)::

    destination:address | value:64 | valid_until:64 | nonce:32 | ^body
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from xp_ledger.chain.address import Address, store_address
from xp_ledger.chain.cells import Cell, begin_cell, from_boc_base64, to_boc_base64
from xp_ledger.chain.errors import DecodeError


def address_for_public_key(public_key: bytes, workchain: int = 0) -> Address:
    """Derive the ledger address owned by ``public_key``."""
    return Address(workchain=workchain, hash_part=hashlib.sha256(public_key).digest())


@dataclass(frozen=True)
class Wallet:
    """An Ed25519 signing identity."""

    private_key: Ed25519PrivateKey = field(repr=False)
    workchain: int = 0

    @classmethod
    def generate(cls, workchain: int = 0) -> Wallet:
        return cls(private_key=Ed25519PrivateKey.generate(), workchain=workchain)

    @classmethod
    def from_secret_hex(cls, secret_hex: str, workchain: int = 0) -> Wallet:
        """Load a wallet from its 32-byte raw private key in hex.

        Raises:
            ValueError: If the text is not a 32-byte hex string.
        """
        raw = bytes.fromhex(secret_hex)
        if len(raw) != 32:
            raise ValueError("wallet secret must be 32 bytes of hex")
        return cls(private_key=Ed25519PrivateKey.from_private_bytes(raw), workchain=workchain)

    @property
    def secret_hex(self) -> str:
        raw = self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return raw.hex()

    @property
    def public_key(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @property
    def address(self) -> Address:
        return address_for_public_key(self.public_key, self.workchain)

    def sign_message(
        self,
        destination: Address,
        body: Cell,
        *,
        value: int,
        valid_until: int,
        nonce: int | None = None,
    ) -> SignedMessage:
        """Wrap ``body`` in an envelope addressed to ``destination`` and sign it."""
        if nonce is None:
            nonce = secrets.randbits(32)
        unsigned = SignedMessage(
            sender=self.address,
            public_key=self.public_key,
            destination=destination,
            value=value,
            valid_until=valid_until,
            nonce=nonce,
            body=body,
            signature=b"",
        )
        signature = self.private_key.sign(unsigned.signing_hash())
        return SignedMessage(
            sender=unsigned.sender,
            public_key=unsigned.public_key,
            destination=destination,
            value=value,
            valid_until=valid_until,
            nonce=nonce,
            body=body,
            signature=signature,
        )


@dataclass(frozen=True)
class SignedMessage:
    """A message body plus the sender's signature over its envelope.

    Attributes:
        sender: Address claimed by the signer.
        public_key: Raw 32-byte Ed25519 public key.
        destination: Target account.
        value: Attached coins in nano; pays for processing.
        valid_until: Unix time after which the node refuses the envelope.
        nonce: Random 32-bit value making otherwise equal envelopes distinct.
        body: Message body cell.
        signature: Ed25519 signature over :meth:`signing_hash`.
    """

    sender: Address
    public_key: bytes
    destination: Address
    value: int
    valid_until: int
    nonce: int
    body: Cell
    signature: bytes

    def envelope_cell(self) -> Cell:
        builder = begin_cell()
        store_address(builder, self.destination)
        return (
            builder.store_uint(self.value, 64)
            .store_uint(self.valid_until, 64)
            .store_uint(self.nonce, 32)
            .store_ref(self.body)
            .end_cell()
        )

    def signing_hash(self) -> bytes:
        return self.envelope_cell().hash()

    def verify(self) -> bool:
        """Check the signature and that ``sender`` derives from ``public_key``."""
        if len(self.public_key) != 32:
            return False
        if address_for_public_key(self.public_key, self.sender.workchain) != self.sender:
            return False
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key).verify(
                self.signature, self.signing_hash()
            )
        except InvalidSignature:
            return False
        return True

    def to_json(self) -> dict[str, Any]:
        return {
            "sender": str(self.sender),
            "public_key": self.public_key.hex(),
            "destination": str(self.destination),
            "value": self.value,
            "valid_until": self.valid_until,
            "nonce": self.nonce,
            "body": to_boc_base64(self.body),
            "signature": self.signature.hex(),
        }

    @classmethod
    def from_json(cls, raw: Any) -> SignedMessage:
        """Parse the JSON form produced by :meth:`to_json`.

        Raises:
            DecodeError: On missing fields or malformed values.
        """
        if not isinstance(raw, dict):
            raise DecodeError("signed message must be a JSON object")
        try:
            return cls(
                sender=Address.parse(raw["sender"]),
                public_key=bytes.fromhex(raw["public_key"]),
                destination=Address.parse(raw["destination"]),
                value=int(raw["value"]),
                valid_until=int(raw["valid_until"]),
                nonce=int(raw["nonce"]),
                body=from_boc_base64(raw["body"]),
                signature=bytes.fromhex(raw["signature"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"malformed signed message: {exc}") from exc
