"""Reconciliation engine: drive AddXP operations to a definitive outcome.

The ledger gives no synchronous success signal.  A submitted message may be
applied seconds later, rejected by the state machine, or silently dropped
because its fee was too low.  :class:`ReconciliationEngine` handles one
target user at a time:

1. Wait out the ledger-wide cooldown (``last_op_time + min_cooldown``).
2. Snapshot the user's balance (failure counts as ``0``).
3. Create or find the user row, then insert a ``pending`` transaction row
   for a fresh random opId.  Nothing is submitted unless both writes landed.
4. Submit ``AddXPWithId`` with exponential backoff on transport failure.
5. After a confirmation delay, poll: look for the transaction that carried
   the message body (gives tx hash or an explicit rejection) and for a
   balance increase attributable to this opId.
6. On a stall, mark the row ``failed`` and escalate once: new opId,
   strictly higher fee, shorter poll budget.
7. Read the user's history; any opId found there is backfilled to
   ``success`` even if its poll had given up.

Writes are serialized across the batch because the ledger accepts at most
one write per cooldown window.  Read-only queries in the pre-flight run
concurrently.

Failure handling
----------------
- Transport errors are retried inside the submit budget; once it is spent
  the attempt fails and the batch moves on.
- Ledger rejections are terminal for the attempt.  ``TooSoon`` escalates
  with a new opId, ``NotOwner`` stops the batch, everything else fails the
  operation.
- The pre-flight (owner identity, wallet funds) raises
  :class:`BatchAbortedError` before any audit row is written.
- :meth:`ReconciliationEngine.stop` is cooperative: the engine stops at its
  next wait and marks the in-flight row ``failed`` first.  Task
  cancellation does the same and then re-raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from functools import partial
from typing import Any, TypeVar

from xp_ledger.chain.errors import (
    DecodeError,
    DuplicateOpError,
    NotOwnerError,
    ProtocolError,
    RateLimitedError,
    SubmissionError,
    TooSoonError,
    TransportError,
    XPLedgerError,
    error_for_exit_code,
)
from xp_ledger.client import SentMessage, XPClient, new_op_id
from xp_ledger.config import ReconcileSettings
from xp_ledger.db.audit import AuditStore
from xp_ledger.db.errors import DatabaseError
from xp_ledger.journal import Journal, JournalWriteError
from xp_ledger.reconcile.types import (
    Attempt,
    AttemptState,
    BatchReport,
    ContractSnapshot,
    Operation,
    PollOutcome,
    Target,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


class BatchAbortedError(Exception):
    """The batch was refused before any submission.

    Attributes:
        reason: Why the batch could not start.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class EngineStopped(Exception):
    """Raised inside the engine when :meth:`ReconciliationEngine.stop` was called."""


class ReconciliationEngine:
    """Submit and reconcile AddXP operations.

    Args:
        client: Client bound to the contract, signing with the owner wallet.
        store: Audit store facade.
        settings: Retry, poll and fee policy.
        min_cooldown: Ledger-wide cooldown in seconds.
        journal: Optional append-only event journal.
        sleep: Awaitable sleep, injectable for tests.
        clock: Unix time source, injectable for tests.
    """

    def __init__(
        self,
        client: XPClient,
        store: AuditStore,
        *,
        settings: ReconcileSettings | None = None,
        min_cooldown: int = 10,
        journal: Journal | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings or ReconcileSettings()
        self.min_cooldown = min_cooldown
        self.journal = journal
        self._sleep = sleep
        self._clock = clock
        self._stop = asyncio.Event()

    # ── Control ───────────────────────────────────────────────────────────────

    def stop(self) -> None:
        """Ask the engine to stop at its next wait."""
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def _pause(self, seconds: float) -> None:
        if self._stop.is_set():
            raise EngineStopped()
        if seconds > 0:
            await self._sleep(seconds)
        if self._stop.is_set():
            raise EngineStopped()

    def _record(self, event_type: str, **data: Any) -> None:
        if self.journal is None:
            return
        try:
            self.journal.append(event_type, data)
        except JournalWriteError:
            logger.warning("Journal write failed; batch continues.", exc_info=True)

    def fee_budget(self, users: int) -> int:
        """Worst-case coins needed for ``users`` operations (both attempts)."""
        per_user = 2 * self.settings.base_fee + self.settings.escalation_fee
        return per_user * users

    # ── Batch ─────────────────────────────────────────────────────────────────

    async def run(self, targets: Sequence[Target]) -> BatchReport:
        """Process ``targets`` one after another and return the batch report.

        A stop requested while the pre-flight is still retrying returns a
        cancelled report with no operations started.

        Raises:
            BatchAbortedError: Pre-flight refused the batch; nothing was
                written or submitted.
        """
        report = BatchReport(started_at=self._clock())
        valid: list[Target] = []
        rejected: list[Operation] = []
        for target in targets:
            problem = self._validate(target)
            if problem is None:
                valid.append(target)
            else:
                logger.warning("Skipping %s: %s", target.name, problem)
                operation = Operation(target=target)
                operation.fail(problem)
                rejected.append(operation)

        snapshot: ContractSnapshot | None = None
        if valid:
            try:
                snapshot = await self._preflight(len(valid))
            except BatchAbortedError as exc:
                self._record("batch.aborted", reason=exc.reason)
                raise
            except EngineStopped:
                report.cancelled = True
                report.reason = "stop requested"
                logger.warning("Batch stopped during pre-flight; nothing submitted")
        report.snapshot = snapshot
        report.operations.extend(rejected)

        if not report.cancelled:
            self._record(
                "batch.started",
                users=len(valid),
                contract=str(self.client.contract),
                amount_total=sum(t.amount for t in valid),
            )
            try:
                for target in valid:
                    operation = Operation(target=target)
                    report.operations.append(operation)
                    await self._process(operation, snapshot)
                    if operation.abort_batch:
                        report.aborted = True
                        report.reason = operation.error
                        logger.error("Stopping batch: %s", operation.error)
                        self._record("batch.aborted", reason=operation.error)
                        break
            except EngineStopped:
                _settle_interrupted(report.operations)
                report.cancelled = True
                report.reason = "stop requested"
                logger.warning("Batch stopped on request")

        report.finished_at = self._clock()
        self._record(
            "batch.finished",
            succeeded=report.succeeded,
            failed=report.failed,
            cancelled=report.cancelled,
            aborted=report.aborted,
        )
        logger.info(
            "Batch finished: %d succeeded, %d failed", report.succeeded, report.failed
        )
        return report

    def _validate(self, target: Target) -> str | None:
        limit = self.settings.max_amount_per_op
        if target.amount <= 0:
            return f"amount must be positive, got {target.amount}"
        if target.amount > limit:
            return f"amount {target.amount} exceeds the per-operation limit {limit}"
        return None

    async def _retry(self, call: Callable[[], Awaitable[T]], what: str) -> T:
        """Run ``call`` with the submit retry budget for transport failures."""
        delay = self.settings.submit_backoff_seconds
        attempts = max(1, self.settings.submit_attempts)
        for number in range(1, attempts):
            try:
                return await call()
            except TransportError as exc:
                logger.warning("%s failed (%s); retry %d/%d", what, exc, number, attempts - 1)
                await self._pause(_backoff_delay(exc, delay, number))
        return await call()

    async def _preflight(self, users: int) -> ContractSnapshot:
        """Verify identity and funds before touching anything."""
        signer = self.client.signer
        try:
            owner, version, last_op_time, balance = await asyncio.gather(
                self._retry(self.client.get_owner, "get_owner"),
                self._retry(self.client.get_version, "get_version"),
                self._retry(self.client.get_last_op_time, "get_last_op_time"),
                self._retry(self.client.get_wallet_balance, "get_wallet_balance"),
            )
        except XPLedgerError as exc:
            raise BatchAbortedError(f"cannot read contract state: {exc}") from exc

        if owner.canonical_hash() != signer.address.canonical_hash():
            raise BatchAbortedError(
                f"signing wallet {signer.address} is not the contract owner {owner}"
            )
        needed = self.fee_budget(users)
        if balance < needed:
            raise BatchAbortedError(
                f"insufficient wallet balance: {balance} nano < {needed} nano for {users} users"
            )

        logger.info(
            "Pre-flight ok: contract %s v%d, owner %s, balance %d nano",
            self.client.contract.short(),
            version,
            owner.short(),
            balance,
        )
        return ContractSnapshot(
            address=self.client.contract,
            owner=owner,
            version=version,
            last_op_time=last_op_time,
            wallet_balance=balance,
        )

    # ── Per user ──────────────────────────────────────────────────────────────

    async def _process(self, operation: Operation, snapshot: ContractSnapshot | None) -> None:
        target = operation.target
        if snapshot is None:
            raise RuntimeError("cannot process a target without a pre-flight snapshot")

        await self._pause(0)
        try:
            operation.before_xp = await self.client.get_xp(target.address)
        except XPLedgerError as exc:
            logger.warning("Could not read XP of %s (%s); assuming 0", target.name, exc)
            operation.before_xp = 0

        try:
            operation.user_id = self.store.ensure_user(
                str(target.address), target.public_key.hex() if target.public_key else None
            )
        except DatabaseError as exc:
            logger.error("Audit store unavailable for %s: %s", target.name, exc)
            operation.fail(f"audit store unavailable: {exc}")
            return

        fee = self.settings.base_fee
        checks = self.settings.poll_checks
        for number in (1, 2):
            attempt = await self._attempt(operation, snapshot, number, fee, checks)
            if attempt is None or attempt.outcome is PollOutcome.CONFIRMED:
                break
            if operation.abort_batch:
                break
            if number == 1 and _should_escalate(attempt):
                operation.advance(AttemptState.ESCALATED)
                fee = self.settings.base_fee + self.settings.escalation_fee
                checks = self.settings.retry_poll_checks
                logger.warning(
                    "Escalating %s: new opId, fee %d nano, %d checks", target.name, fee, checks
                )
                self._record(
                    "attempt.escalated",
                    user=str(target.address),
                    previous_op_id=attempt.op_id_hex,
                    fee=fee,
                )
                continue
            break

        await self._verify_history(operation)

        if operation.succeeded:
            if operation.state is not AttemptState.CONFIRMED:
                # Confirmed only through history after polling gave up.
                operation.advance(AttemptState.CONFIRMED)
                operation.error = None
        else:
            last = operation.attempts[-1] if operation.attempts else None
            operation.fail(
                operation.error
                or (last.description if last and last.description else "not confirmed")
            )

        await self._refresh_mirror(operation)

    async def _attempt(
        self,
        operation: Operation,
        snapshot: ContractSnapshot,
        number: int,
        fee: int,
        checks: int,
    ) -> Attempt | None:
        target = operation.target
        last_op_time = await self._wait_for_cooldown()

        try:
            min_lt = await self.client.latest_lt()
        except XPLedgerError as exc:
            logger.debug("Could not read latest lt (%s); scanning from 0", exc)
            min_lt = 0

        if operation.user_id is None:
            raise RuntimeError(f"no audit user row for {target.name}")
        attempt = Attempt(
            number=number, op_id=new_op_id(), fee=fee, poll_checks=checks, min_lt=min_lt
        )
        try:
            self.store.record_pending(
                op_id=attempt.op_id,
                user_id=operation.user_id,
                amount=target.amount,
                sender_address=str(self.client.signer.address),
                receiver_address=str(target.address),
                contract_address=str(snapshot.address),
                contract_owner=str(snapshot.owner),
                contract_version=snapshot.version,
                last_op_time=last_op_time if last_op_time is not None else snapshot.last_op_time,
                fee=fee,
                attempt=number,
                description="escalated retry" if number > 1 else "initial attempt",
            )
        except DatabaseError as exc:
            logger.error("Could not record attempt for %s: %s", target.name, exc)
            operation.error = f"audit store unavailable: {exc}"
            return None
        operation.attempts.append(attempt)

        try:
            operation.advance(AttemptState.SUBMITTED)
            try:
                attempt.sent = await self._submit(target, attempt)
            except (TransportError, DecodeError) as exc:
                self._finalize_failed(operation, attempt, f"transport failure: {exc}")
                return attempt
            except SubmissionError as exc:
                self._finalize_failed(operation, attempt, f"refused by node: {exc}")
                return attempt

            self._record(
                "attempt.submitted",
                user=str(target.address),
                op_id=attempt.op_id_hex,
                attempt=number,
                fee=fee,
                body_hash=attempt.sent.body_hash,
            )
            operation.advance(AttemptState.POLLING)
            await self._poll(operation, attempt, attempt.sent)
        except (EngineStopped, asyncio.CancelledError):
            if attempt.status == "pending":
                self._finalize_failed(operation, attempt, "cancelled before confirmation")
            raise
        return attempt

    async def _wait_for_cooldown(self) -> int | None:
        """Sleep until the ledger-wide cooldown has passed; returns last_op_time."""
        try:
            last_op_time = await self.client.get_last_op_time()
        except XPLedgerError as exc:
            logger.warning("Could not read last_op_time (%s); submitting without wait", exc)
            return None
        if last_op_time > 0:
            remaining = last_op_time + self.min_cooldown - self._clock()
            if remaining > 0:
                wait = remaining + self.settings.cooldown_margin_seconds
                logger.info("Cooldown active; waiting %.1fs", wait)
                await self._pause(wait)
        return last_op_time

    async def _submit(self, target: Target, attempt: Attempt) -> SentMessage:
        """Send AddXPWithId, retrying transport failures with backoff.

        A resend after an ambiguous failure reuses the opId, so if the first
        message did get through the ledger answers ``DuplicateOp`` instead of
        crediting twice.
        """
        send = partial(
            self.client.send_add_xp,
            target.address,
            target.amount,
            op_id=attempt.op_id,
            value=attempt.fee,
        )
        return await self._retry(send, f"Submit for {target.name}")

    async def _poll(self, operation: Operation, attempt: Attempt, sent: SentMessage) -> None:
        """Wait for the attempt to be confirmed, rejected or given up on."""
        target = operation.target
        await self._pause(self.settings.confirmation_delay_seconds)
        baseline = operation.before_xp

        for check in range(1, attempt.poll_checks + 1):
            try:
                tx = await self.client.find_transaction(sent.body_hash, after_lt=attempt.min_lt)
            except XPLedgerError as exc:
                logger.debug("Transaction lookup failed (%s)", exc)
                tx = None

            if tx is not None:
                attempt.exit_code = tx.exit_code
                if tx.exit_code == DuplicateOpError.exit_code:
                    # A resend of this opId; the original is already applied.
                    await self._confirm(operation, attempt)
                    return
                self._save_tx_hash(attempt, tx.hash)
                if tx.success:
                    await self._confirm(operation, attempt)
                    return
                self._reject(operation, attempt, error_for_exit_code(tx.exit_code, tx.error or ""))
                return

            try:
                xp = await self.client.get_xp(target.address)
            except XPLedgerError as exc:
                logger.debug("Balance poll %d failed (%s)", check, exc)
                xp = None

            if xp is not None and xp > baseline:
                if await self._attributed(target, attempt):
                    operation.after_xp = xp
                    await self._confirm(operation, attempt)
                    return
                # Another operation landed; keep waiting for ours.
                baseline = xp

            logger.debug("%s: check %d/%d, no confirmation", target.name, check, attempt.poll_checks)
            if check < attempt.poll_checks:
                await self._pause(self.settings.poll_interval_seconds)

        attempt.outcome = PollOutcome.STALLED
        self._finalize_failed(
            operation,
            attempt,
            f"not confirmed after {attempt.poll_checks} checks"
            + ("; escalated" if attempt.number == 1 else ""),
        )

    async def _attributed(self, target: Target, attempt: Attempt) -> bool:
        """Whether the user's history holds this attempt's opId.

        An unreadable history counts as attributed: the balance did increase.
        """
        try:
            history = await self.client.get_user_history(target.address)
        except XPLedgerError:
            return True
        return attempt.op_id in history

    async def _confirm(self, operation: Operation, attempt: Attempt) -> None:
        attempt.outcome = PollOutcome.CONFIRMED
        last_op_time: int | None = None
        try:
            last_op_time = await self.client.get_last_op_time()
        except XPLedgerError as exc:
            logger.debug("Could not read last_op_time for %s (%s)", attempt.op_id_hex, exc)
        finally:
            # The ledger applied it; the row must say so even if cancelled here.
            self._record_success(attempt, last_op_time)
        operation.advance(AttemptState.CONFIRMED)
        logger.info(
            "Confirmed +%d XP for %s (attempt %d)",
            operation.target.amount,
            operation.target.name,
            attempt.number,
        )
        self._record(
            "attempt.confirmed",
            user=str(operation.target.address),
            op_id=attempt.op_id_hex,
            tx_hash=attempt.tx_hash,
        )

    def _record_success(self, attempt: Attempt, last_op_time: int | None) -> None:
        attempt.status = "success"
        try:
            self.store.record_success(
                attempt.op_id,
                tx_hash=attempt.tx_hash,
                exit_code=0,
                last_op_time=last_op_time,
                description=f"confirmed on attempt {attempt.number}",
            )
        except DatabaseError:
            logger.error("Could not record success for %s", attempt.op_id_hex, exc_info=True)

    def _save_tx_hash(self, attempt: Attempt, tx_hash: str) -> None:
        """Write the ledger transaction hash as soon as it is known."""
        attempt.tx_hash = tx_hash
        try:
            self.store.backfill_tx_hash(attempt.op_id, tx_hash)
        except DatabaseError:
            logger.warning("Could not record tx hash for %s", attempt.op_id_hex, exc_info=True)

    def _reject(self, operation: Operation, attempt: Attempt, error: ProtocolError) -> None:
        attempt.outcome = PollOutcome.REJECTED
        self._finalize_failed(operation, attempt, f"rejected: {error.name} ({error})")
        self._record(
            "attempt.rejected",
            user=str(operation.target.address),
            op_id=attempt.op_id_hex,
            exit_code=int(error.exit_code),
        )
        if isinstance(error, NotOwnerError):
            operation.abort_batch = True
            operation.error = f"ledger rejected the owner wallet: {error}"

    def _finalize_failed(self, operation: Operation, attempt: Attempt, description: str) -> None:
        attempt.status = "failed"
        attempt.description = description
        diagnostics = {
            "op_ids": operation.op_ids,
            "before_xp": operation.before_xp,
            "fee": attempt.fee,
            "poll_checks": attempt.poll_checks,
        }
        try:
            self.store.record_failure(
                attempt.op_id,
                description,
                tx_hash=attempt.tx_hash,
                exit_code=attempt.exit_code,
                diagnostics=diagnostics,
            )
        except DatabaseError:
            logger.error("Could not record failure for %s", attempt.op_id_hex, exc_info=True)
        self._record(
            "attempt.failed",
            user=str(operation.target.address),
            op_id=attempt.op_id_hex,
            reason=description,
        )
        logger.warning("%s attempt %d failed: %s", operation.target.name, attempt.number, description)

    async def _verify_history(self, operation: Operation) -> None:
        """Backfill attempts whose opId is in the ledger history."""
        unresolved = [a for a in operation.attempts if a.status != "success" and a.sent]
        if not unresolved:
            return
        try:
            history = await self.client.get_user_history(operation.target.address)
        except XPLedgerError as exc:
            logger.warning("History check for %s failed: %s", operation.target.name, exc)
            return
        for attempt in unresolved:
            entry = history.get(attempt.op_id)
            if entry is None:
                continue
            attempt.status = "success"
            try:
                self.store.record_success(
                    attempt.op_id,
                    last_op_time=entry.timestamp,
                    description=f"found in ledger history (attempt {attempt.number})",
                )
            except DatabaseError:
                logger.error("Could not backfill %s", attempt.op_id_hex, exc_info=True)
            await self._backfill_tx_hash(attempt)
            logger.info(
                "Attempt %d for %s found in history; backfilled",
                attempt.number,
                operation.target.name,
            )
            self._record(
                "attempt.backfilled",
                user=str(operation.target.address),
                op_id=attempt.op_id_hex,
                timestamp=entry.timestamp,
                tx_hash=attempt.tx_hash,
            )

    async def _backfill_tx_hash(self, attempt: Attempt) -> None:
        """Find the transaction of an attempt that landed after polling gave up."""
        if attempt.tx_hash is not None or attempt.sent is None:
            return
        try:
            tx = await self.client.find_transaction(
                attempt.sent.body_hash, after_lt=attempt.min_lt
            )
        except XPLedgerError as exc:
            logger.debug("Transaction lookup for %s failed (%s)", attempt.op_id_hex, exc)
            return
        if tx is not None and tx.success:
            self._save_tx_hash(attempt, tx.hash)

    async def _refresh_mirror(self, operation: Operation) -> None:
        if operation.user_id is None:
            return
        if operation.after_xp is None:
            try:
                operation.after_xp = await self.client.get_xp(operation.target.address)
            except XPLedgerError as exc:
                logger.warning("Could not refresh XP of %s: %s", operation.target.name, exc)
                return
        try:
            self.store.update_xp(operation.user_id, operation.after_xp)
        except DatabaseError:
            logger.warning("Could not update XP mirror", exc_info=True)


def _settle_interrupted(operations: Sequence[Operation]) -> None:
    """Give the operation that was in flight at a stop a terminal state."""
    for operation in operations:
        if operation.state in (AttemptState.CONFIRMED, AttemptState.FAILED):
            continue
        if operation.succeeded:
            operation.advance(AttemptState.CONFIRMED)
        else:
            operation.fail("stop requested")


def _should_escalate(attempt: Attempt) -> bool:
    if attempt.outcome is PollOutcome.STALLED:
        return True
    return attempt.outcome is PollOutcome.REJECTED and attempt.exit_code == TooSoonError.exit_code


def _backoff_delay(exc: TransportError, base: float, number: int) -> float:
    """Exponential backoff; a rate-limit hint wins when it is longer."""
    delay = base * (2 ** (number - 1))
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        return max(delay, exc.retry_after)
    return delay
