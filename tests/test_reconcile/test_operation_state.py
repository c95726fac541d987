"""Tests for the operation state machine and batch report."""

import pytest

from xp_ledger.chain.address import Address
from xp_ledger.reconcile import (
    ALLOWED_TRANSITIONS,
    Attempt,
    AttemptState,
    BatchReport,
    Operation,
    Target,
)

USER = Address(0, b"\x0b" * 32)


def _operation() -> Operation:
    return Operation(target=Target(USER, 1))


@pytest.mark.unit
class TestOperation:
    def test_happy_transitions(self):
        operation = _operation()
        for state in (AttemptState.SUBMITTED, AttemptState.POLLING, AttemptState.CONFIRMED):
            operation.advance(state)

        assert operation.transitions == [
            AttemptState.IDLE,
            AttemptState.SUBMITTED,
            AttemptState.POLLING,
            AttemptState.CONFIRMED,
        ]

    def test_illegal_transition_raises(self):
        with pytest.raises(RuntimeError, match="idle -> confirmed"):
            _operation().advance(AttemptState.CONFIRMED)

    @pytest.mark.parametrize("terminal", [AttemptState.CONFIRMED, AttemptState.FAILED])
    def test_terminal_states_have_no_exit(self, terminal):
        assert ALLOWED_TRANSITIONS[terminal] == frozenset()

    def test_fail_is_idempotent(self):
        operation = _operation()
        operation.fail("first")
        operation.fail("second")

        assert operation.state is AttemptState.FAILED
        assert operation.error == "second"
        assert operation.transitions.count(AttemptState.FAILED) == 1

    def test_succeeded_follows_attempts(self):
        operation = _operation()
        operation.attempts = [Attempt(1, 1, 10, 3, status="failed"), Attempt(2, 2, 20, 2)]
        assert not operation.succeeded

        operation.attempts[0].status = "success"
        assert operation.succeeded
        assert operation.op_ids == [format(1, "064x"), format(2, "064x")]


@pytest.mark.unit
class TestTargetAndReport:
    def test_target_name_prefers_label(self):
        assert Target(USER, 1, label="alice").name == "alice"
        assert Target(USER, 1).name == USER.short()

    def test_report_counts(self):
        ok, bad = _operation(), _operation()
        ok.attempts = [Attempt(1, 1, 10, 3, status="success")]
        report = BatchReport(started_at=0.0, operations=[ok, bad])

        assert (report.succeeded, report.failed) == (1, 1)
