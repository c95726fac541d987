"""Tests for the in-process ledger node."""

import dataclasses

import pytest

from xp_ledger.chain.codec import AddXP, AddXPWithId, StackItem, Upgrade, encode_message
from xp_ledger.chain.contract import DEFAULT_CODE, code_cell
from xp_ledger.chain.errors import ExitCode, SubmissionError
from xp_ledger.chain.sandbox import (
    LedgerSandbox,
    TransactionRecord,
    derive_contract_address,
    from_nano,
    to_nano,
)
from tests.helpers import FakeClock, deploy_contract

FEE = to_nano("0.2")


def _send(sandbox, wallet, contract, message, clock, *, value=FEE):
    envelope = wallet.sign_message(
        contract, encode_message(message), value=value, valid_until=int(clock()) + 60
    )
    return envelope, sandbox.submit(envelope)


def _xp(sandbox, contract, user) -> int:
    code, stack = sandbox.run_get_method(contract, "get_xp", [StackItem.address(user)])
    assert code == 0
    return stack[0].value


@pytest.mark.unit
class TestUnits:
    def test_nano_conversion(self):
        assert to_nano("0.2") == 200_000_000
        assert to_nano(1) == 1_000_000_000
        assert str(from_nano(150_000_000)) == "0.15"

    def test_contract_address_depends_on_salt(self):
        assert derive_contract_address(DEFAULT_CODE, 0) != derive_contract_address(DEFAULT_CODE, 1)


@pytest.mark.unit
class TestDeploy:
    def test_deploy_initializes_owner(self, sandbox, contract, owner):
        code, stack = sandbox.run_get_method(contract, "get_owner", [])

        assert code == 0
        assert stack == [StackItem.address(owner.address)]
        assert sandbox.get_code(contract) == DEFAULT_CODE

    def test_uninitialized_until_delivery(self, clock, owner):
        sandbox = LedgerSandbox(clock=clock, latency=5.0)
        sandbox.fund(owner.address, to_nano(1))
        address = derive_contract_address(DEFAULT_CODE, 0)
        message = owner.sign_message(
            address, encode_message(AddXP(user=owner.address, amount=1)), value=1, valid_until=int(clock()) + 60
        )
        sandbox.deploy(message, DEFAULT_CODE)

        assert sandbox.get_state(address) is None
        assert sandbox.run_get_method(address, "get_owner", [])[0] == ExitCode.INVALID_OP
        clock.advance(5)
        assert sandbox.get_state(address).owner == owner.address

    def test_wrong_destination_rejected(self, sandbox, owner, clock):
        message = owner.sign_message(
            derive_contract_address(DEFAULT_CODE, 7),
            encode_message(AddXP(user=owner.address, amount=1)),
            value=1,
            valid_until=int(clock()) + 60,
        )
        with pytest.raises(SubmissionError):
            sandbox.deploy(message, DEFAULT_CODE, salt=0)

    def test_get_method_on_unknown_account(self, sandbox, stranger):
        assert sandbox.run_get_method(stranger.address, "get_xp", []) == (ExitCode.INVALID_OP, [])


@pytest.mark.unit
class TestSubmit:
    def test_delivery_waits_for_latency(self, sandbox, contract, owner, users, clock):
        user = users[0].address
        _send(sandbox, owner, contract, AddXP(user=user, amount=3), clock)

        assert sandbox.pending_count == 1
        assert _xp(sandbox, contract, user) == 0
        clock.advance(2)
        assert _xp(sandbox, contract, user) == 3
        assert sandbox.pending_count == 0

    def test_value_moves_to_contract(self, sandbox, contract, owner, users, clock):
        before = sandbox.get_balance(owner.address)
        contract_before = sandbox.get_balance(contract)
        _send(sandbox, owner, contract, AddXP(user=users[0].address, amount=1), clock)
        clock.advance(2)

        assert sandbox.get_balance(owner.address) == before - FEE
        assert sandbox.get_balance(contract) == contract_before + FEE

    def test_rejected_message_bounces_value(self, sandbox, contract, users, clock):
        intruder = users[1]
        sandbox.fund(intruder.address, to_nano(1))
        _send(sandbox, intruder, contract, AddXP(user=intruder.address, amount=100), clock)
        clock.advance(2)

        assert sandbox.get_balance(intruder.address) == to_nano(1)
        (tx,) = sandbox.get_transactions(contract, limit=1)
        assert tx.exit_code == ExitCode.NOT_OWNER
        assert not tx.success

    def test_bad_signature_refused(self, sandbox, contract, owner, clock):
        envelope = owner.sign_message(
            contract, encode_message(AddXP(user=owner.address, amount=1)), value=FEE, valid_until=int(clock()) + 60
        )
        with pytest.raises(SubmissionError, match="signature"):
            sandbox.submit(dataclasses.replace(envelope, value=FEE - 1))

    def test_expired_envelope_refused(self, sandbox, contract, owner, clock):
        envelope = owner.sign_message(
            contract, encode_message(AddXP(user=owner.address, amount=1)), value=FEE, valid_until=int(clock()) - 1
        )
        with pytest.raises(SubmissionError, match="expired"):
            sandbox.submit(envelope)

    def test_replay_refused(self, sandbox, contract, owner, clock):
        envelope, _ = _send(sandbox, owner, contract, AddXP(user=owner.address, amount=1), clock)
        with pytest.raises(SubmissionError, match="already"):
            sandbox.submit(envelope)

    def test_insufficient_funds_refused(self, sandbox, contract, stranger, clock):
        with pytest.raises(SubmissionError, match="insufficient"):
            _send(sandbox, stranger, contract, AddXP(user=stranger.address, amount=1), clock)

    def test_unknown_destination_refused(self, sandbox, owner, stranger, clock):
        with pytest.raises(SubmissionError, match="no contract"):
            _send(sandbox, owner, stranger.address, AddXP(user=owner.address, amount=1), clock)

    def test_cooldown_applies_at_delivery_time(self, sandbox, contract, owner, users, clock):
        _send(sandbox, owner, contract, AddXP(user=users[0].address, amount=1), clock)
        clock.advance(1)
        _send(sandbox, owner, contract, AddXP(user=users[1].address, amount=1), clock)
        clock.advance(5)

        newest, older = sandbox.get_transactions(contract, limit=2)
        assert older.success
        assert newest.exit_code == ExitCode.TOO_SOON


@pytest.mark.unit
class TestLossyDelivery:
    def test_low_fee_is_dropped_silently(self, clock, owner, users):
        sandbox = LedgerSandbox(clock=clock, latency=1.0, min_fee=to_nano("0.25"))
        sandbox.fund(owner.address, to_nano(10))
        contract = deploy_contract(sandbox, owner, clock)
        # The 0.1 deploy message is below the floor as well
        assert sandbox.get_state(contract) is None

        big = owner.sign_message(
            contract,
            encode_message(AddXP(user=users[0].address, amount=1)),
            value=to_nano("0.3"),
            valid_until=int(clock()) + 60,
        )
        sandbox.submit(big)
        clock.advance(1)
        assert sandbox.get_state(contract).owner == owner.address

        before = sandbox.get_balance(owner.address)
        _send(sandbox, owner, contract, AddXP(user=users[0].address, amount=1), clock)
        clock.advance(30)

        assert sandbox.get_balance(owner.address) == before - FEE
        assert _xp(sandbox, contract, users[0].address) == 0
        assert sandbox.pending_count == 0

    def test_drop_filter(self, clock, owner, users):
        target = users[0].address
        sandbox = LedgerSandbox(
            clock=clock,
            drop_filter=lambda m: m.body == encode_message(AddXP(user=target, amount=1)),
        )
        sandbox.fund(owner.address, to_nano(10))
        contract = deploy_contract(sandbox, owner, clock)

        _send(sandbox, owner, contract, AddXP(user=target, amount=1), clock)
        assert _xp(sandbox, contract, target) == 0
        assert sandbox.get_transactions(contract, limit=1)[0].action == "initialize"


@pytest.mark.unit
class TestTransactionsAndUpgrade:
    def test_transactions_newest_first_with_after_lt(self, sandbox, contract, owner, users, clock):
        for i, user in enumerate(users[:2]):
            _send(sandbox, owner, contract, AddXPWithId(user=user.address, amount=1, op_id=i + 1), clock)
            clock.advance(10)

        txs = sandbox.get_transactions(contract)
        assert [tx.lt for tx in txs] == sorted((tx.lt for tx in txs), reverse=True)
        assert len(sandbox.get_transactions(contract, after_lt=txs[1].lt)) == 1

    def test_body_hash_matches_submission(self, sandbox, contract, owner, users, clock):
        envelope, _ = _send(sandbox, owner, contract, AddXP(user=users[0].address, amount=1), clock)
        clock.advance(2)

        (tx,) = sandbox.get_transactions(contract, limit=1)
        assert tx.body_hash == envelope.body.hash().hex()
        assert tx.sender == owner.address

    def test_transaction_json_roundtrip(self, sandbox, contract):
        (tx,) = sandbox.get_transactions(contract, limit=1)
        assert TransactionRecord.from_json(tx.to_json()) == tx

    def test_upgrade_swaps_code(self, sandbox, contract, owner, clock):
        new_code = code_cell("xp-ledger/2")
        _send(sandbox, owner, contract, Upgrade(new_code=new_code), clock)
        clock.advance(2)

        assert sandbox.get_code(contract) == new_code
        assert sandbox.run_get_method(contract, "get_version", [])[1] == [StackItem.num(2)]


def test_fake_clock_sleep_advances_time():
    clock = FakeClock(100.0)
    clock.advance(5)
    assert clock() == 105.0
