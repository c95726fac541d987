"""Tests for Ed25519 wallets and signed message envelopes."""

import dataclasses

import pytest

from xp_ledger.chain.address import Address
from xp_ledger.chain.cells import begin_cell
from xp_ledger.chain.errors import DecodeError
from xp_ledger.chain.wallet import SignedMessage, Wallet, address_for_public_key

DEST = Address(0, b"\x09" * 32)


@pytest.fixture
def wallet() -> Wallet:
    return Wallet.generate()


@pytest.fixture
def message(wallet: Wallet) -> SignedMessage:
    body = begin_cell().store_uint(0x1234, 32).end_cell()
    return wallet.sign_message(DEST, body, value=5, valid_until=1_700_000_060, nonce=1)


@pytest.mark.unit
class TestWallet:
    def test_address_derives_from_public_key(self, wallet: Wallet):
        assert len(wallet.public_key) == 32
        assert wallet.address == address_for_public_key(wallet.public_key)

    def test_secret_hex_roundtrip(self, wallet: Wallet):
        restored = Wallet.from_secret_hex(wallet.secret_hex)
        assert restored.address == wallet.address

    def test_workchain_is_kept(self):
        wallet = Wallet.generate(workchain=-1)
        assert wallet.address.workchain == -1

    @pytest.mark.parametrize("secret", ["zz" * 32, "00" * 31])
    def test_bad_secret_rejected(self, secret: str):
        with pytest.raises(ValueError):
            Wallet.from_secret_hex(secret)

    def test_secret_not_in_repr(self, wallet: Wallet):
        assert wallet.secret_hex not in repr(wallet)


@pytest.mark.unit
class TestSignedMessage:
    def test_valid_signature_verifies(self, message: SignedMessage):
        assert message.verify()

    def test_tampered_value_fails(self, message: SignedMessage):
        assert not dataclasses.replace(message, value=6).verify()

    def test_tampered_body_fails(self, message: SignedMessage):
        other = begin_cell().store_uint(0x4321, 32).end_cell()
        assert not dataclasses.replace(message, body=other).verify()

    def test_spoofed_sender_fails(self, message: SignedMessage):
        assert not dataclasses.replace(message, sender=DEST).verify()

    def test_foreign_key_fails(self, message: SignedMessage):
        intruder = Wallet.generate()
        forged = dataclasses.replace(
            message, public_key=intruder.public_key, sender=intruder.address
        )
        assert not forged.verify()

    def test_nonce_distinguishes_envelopes(self, wallet: Wallet):
        body = begin_cell().end_cell()
        a = wallet.sign_message(DEST, body, value=1, valid_until=10, nonce=1)
        b = wallet.sign_message(DEST, body, value=1, valid_until=10, nonce=2)

        assert a.signing_hash() != b.signing_hash()

    def test_json_roundtrip(self, message: SignedMessage):
        restored = SignedMessage.from_json(message.to_json())

        assert restored == message
        assert restored.verify()

    @pytest.mark.parametrize("missing", ["sender", "signature", "body", "nonce"])
    def test_json_missing_field(self, message: SignedMessage, missing: str):
        raw = message.to_json()
        del raw[missing]
        with pytest.raises(DecodeError):
            SignedMessage.from_json(raw)

    def test_json_not_an_object(self):
        with pytest.raises(DecodeError):
            SignedMessage.from_json(["sender"])
