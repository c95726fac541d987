"""In-process ledger node.

:class:`LedgerSandbox` hosts accounts, a message queue and a transaction log
around the pure state machine in :mod:`xp_ledger.chain.contract`.  It models
the parts of a real network that the reconciliation engine has to cope with:

- Delivery is asynchronous.  An accepted message is queued and only applied
  once ``latency`` seconds have passed on the sandbox clock.
- Fees are real.  The attached value is deducted from the sender on
  submission; messages below ``min_fee`` are accepted and then silently
  dropped, which from the outside looks exactly like a stalled delivery.
- Rejected messages bounce: the state is untouched, the value goes back to the
  sender and the transaction log records the exit code.

The queue is drained lazily: every public call first delivers whatever has
become due, so no background task is needed and a fake clock gives fully
deterministic behaviour in tests.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from xp_ledger.chain.address import Address
from xp_ledger.chain.cells import Cell, begin_cell
from xp_ledger.chain.codec import StackItem, StorageRoot
from xp_ledger.chain.contract import DEFAULT_PARAMS, ContractParams, apply, run_get_method
from xp_ledger.chain.errors import DecodeError, ExitCode, ProtocolError, SubmissionError
from xp_ledger.chain.wallet import SignedMessage

logger = logging.getLogger(__name__)

NANO = 1_000_000_000

Clock = Callable[[], float]
DropFilter = Callable[[SignedMessage], bool]


def to_nano(amount: str | int | float | Decimal) -> int:
    """Convert a coin amount (``"0.2"``) into nano units."""
    return int(Decimal(str(amount)) * NANO)


def from_nano(value: int) -> Decimal:
    return Decimal(value) / NANO


def derive_contract_address(code: Cell, salt: int = 0, workchain: int = 0) -> Address:
    """Address of a contract instance: hash of its code and deploy salt."""
    init = begin_cell().store_ref(code).store_uint(salt, 64).end_cell()
    return Address(workchain=workchain, hash_part=init.hash())


# =============================================================================
# RECORDS
# =============================================================================


@dataclass
class Account:
    """One account on the sandbox ledger; contracts also carry code and state."""

    address: Address
    balance: int = 0
    code: Cell | None = None
    state: StorageRoot | None = None

    @property
    def is_contract(self) -> bool:
        return self.code is not None


@dataclass(frozen=True)
class TransactionRecord:
    """A processed inbound message as seen in an account's transaction log.

    Attributes:
        lt: Logical time; strictly increasing across the whole node.
        hash: Hex transaction hash.
        account: Account that processed the message.
        sender: Message sender.
        body_hash: Hex hash of the message body cell, used to match a
            submission to the transaction that processed it.
        value: Attached value in nano.
        exit_code: ``0`` when the state machine accepted the message.
        action: State machine action (``add_xp``, ``upgrade``, ...).
        utime: Unix time the transaction was processed.
        error: Rejection reason, if any.
    """

    lt: int
    hash: str
    account: Address
    sender: Address
    body_hash: str
    value: int
    exit_code: int
    action: str
    utime: int
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == ExitCode.OK

    def to_json(self) -> dict[str, Any]:
        return {
            "lt": self.lt,
            "hash": self.hash,
            "account": str(self.account),
            "sender": str(self.sender),
            "body_hash": self.body_hash,
            "value": self.value,
            "exit_code": self.exit_code,
            "action": self.action,
            "utime": self.utime,
            "error": self.error,
        }

    @classmethod
    def from_json(cls, raw: Any) -> TransactionRecord:
        if not isinstance(raw, dict):
            raise DecodeError("transaction must be a JSON object")
        try:
            return cls(
                lt=int(raw["lt"]),
                hash=str(raw["hash"]),
                account=Address.parse(raw["account"]),
                sender=Address.parse(raw["sender"]),
                body_hash=str(raw["body_hash"]),
                value=int(raw["value"]),
                exit_code=int(raw["exit_code"]),
                action=str(raw["action"]),
                utime=int(raw["utime"]),
                error=raw.get("error"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"malformed transaction: {exc}") from exc


@dataclass(order=True)
class _Pending:
    due: float
    seq: int
    message: SignedMessage = field(compare=False)


# =============================================================================
# SANDBOX
# =============================================================================


class LedgerSandbox:
    """Deterministic in-memory ledger node.

    Args:
        clock: Source of the current Unix time.
        latency: Seconds between acceptance and delivery of a message.
        min_fee: Messages carrying less value are accepted and then dropped.
        drop_filter: Optional predicate; matching messages are dropped too.
        params: State machine constants for contracts deployed here.
    """

    def __init__(
        self,
        *,
        clock: Clock = time.time,
        latency: float = 0.0,
        min_fee: int = 0,
        drop_filter: DropFilter | None = None,
        params: ContractParams = DEFAULT_PARAMS,
    ) -> None:
        self.clock = clock
        self.latency = latency
        self.min_fee = min_fee
        self.drop_filter = drop_filter
        self.params = params
        self.accounts: dict[Address, Account] = {}
        self._queue: list[_Pending] = []
        self._transactions: list[TransactionRecord] = []
        self._seen_envelopes: dict[bytes, int] = {}
        self._lt = 0
        self._seq = 0

    # ── Accounts ──────────────────────────────────────────────────────────────

    def _account(self, address: Address) -> Account:
        account = self.accounts.get(address)
        if account is None:
            account = Account(address=address)
            self.accounts[address] = account
        return account

    def fund(self, address: Address, amount: int) -> int:
        """Credit ``amount`` nano to ``address`` and return the new balance."""
        account = self._account(address)
        account.balance += amount
        return account.balance

    def get_balance(self, address: Address) -> int:
        self._pump()
        account = self.accounts.get(address)
        return account.balance if account else 0

    def get_state(self, address: Address) -> StorageRoot | None:
        self._pump()
        account = self.accounts.get(address)
        return account.state if account else None

    def get_code(self, address: Address) -> Cell | None:
        self._pump()
        account = self.accounts.get(address)
        return account.code if account else None

    # ── Messages ──────────────────────────────────────────────────────────────

    def deploy(self, message: SignedMessage, code: Cell, *, salt: int = 0) -> Address:
        """Create the contract for ``code``/``salt`` and queue ``message`` to it.

        ``message.destination`` must equal the derived contract address.  If the
        contract already exists the message is queued like any other, so
        repeating a deploy is harmless.
        """
        address = derive_contract_address(code, salt, message.destination.workchain)
        if message.destination != address:
            raise SubmissionError(
                f"deploy destination {message.destination} does not match derived {address}"
            )
        account = self._account(address)
        if account.code is None:
            account.code = code
            logger.info("Deployed contract %s", address.short())
        self.submit(message)
        return address

    def submit(self, message: SignedMessage) -> str:
        """Accept a signed message for later delivery and return its hex hash.

        Raises:
            SubmissionError: Bad signature, expired or replayed envelope,
                unknown destination, or insufficient sender funds.
        """
        self._pump()
        now = self.clock()

        if not message.verify():
            raise SubmissionError("invalid message signature")
        if message.valid_until < now:
            raise SubmissionError("message expired before submission")

        envelope = message.signing_hash()
        self._forget_expired_envelopes(now)
        if envelope in self._seen_envelopes:
            raise SubmissionError("message was already submitted")

        destination = self.accounts.get(message.destination)
        if destination is None or not destination.is_contract:
            raise SubmissionError(f"no contract at {message.destination}")

        sender = self._account(message.sender)
        if sender.balance < message.value:
            raise SubmissionError(
                f"insufficient funds: balance {sender.balance} < value {message.value}"
            )

        sender.balance -= message.value
        self._seen_envelopes[envelope] = message.valid_until

        if message.value < self.min_fee or (self.drop_filter and self.drop_filter(message)):
            logger.debug("Dropping message %s (value %d)", envelope.hex()[:16], message.value)
        else:
            self._seq += 1
            self._queue.append(_Pending(due=now + self.latency, seq=self._seq, message=message))
            self._queue.sort()
        return envelope.hex()

    def _forget_expired_envelopes(self, now: float) -> None:
        expired = [key for key, valid_until in self._seen_envelopes.items() if valid_until < now]
        for key in expired:
            del self._seen_envelopes[key]

    def _pump(self) -> None:
        now = self.clock()
        while self._queue and self._queue[0].due <= now:
            pending = self._queue.pop(0)
            self._deliver(pending.message, int(pending.due))

    def _deliver(self, message: SignedMessage, utime: int) -> None:
        account = self._account(message.destination)
        state, result = apply(
            account.state, message.body, sender=message.sender, now=utime, params=self.params
        )
        if result.accepted:
            account.state = state
            account.balance += message.value
            if result.new_code is not None:
                account.code = result.new_code
        else:
            self._account(message.sender).balance += message.value

        self._lt += 1
        body_hash = message.body.hash().hex()
        digest = hashlib.sha256(
            f"{self._lt}:{account.address}:{body_hash}:{result.exit_code}".encode()
        ).hexdigest()
        record = TransactionRecord(
            lt=self._lt,
            hash=digest,
            account=account.address,
            sender=message.sender,
            body_hash=body_hash,
            value=message.value,
            exit_code=int(result.exit_code),
            action=result.action,
            utime=utime,
            error=result.error,
        )
        self._transactions.append(record)
        if result.accepted:
            logger.debug("lt=%d %s on %s", record.lt, record.action, account.address.short())
        else:
            logger.info(
                "lt=%d rejected on %s: exit %d %s",
                record.lt,
                account.address.short(),
                record.exit_code,
                record.error,
            )

    # ── Queries ───────────────────────────────────────────────────────────────

    def run_get_method(
        self, address: Address, method: str, args: Sequence[StackItem] = ()
    ) -> tuple[int, list[StackItem]]:
        """Run a get method; returns ``(exit_code, stack)``."""
        self._pump()
        account = self.accounts.get(address)
        if account is None or not account.is_contract:
            return int(ExitCode.INVALID_OP), []
        try:
            return int(ExitCode.OK), run_get_method(account.state, method, args)
        except ProtocolError as exc:
            return int(exc.exit_code), []

    def get_transactions(
        self, address: Address, *, limit: int = 20, after_lt: int = 0
    ) -> list[TransactionRecord]:
        """Transactions of ``address`` with ``lt > after_lt``, newest first."""
        self._pump()
        matching = [
            tx for tx in reversed(self._transactions) if tx.account == address and tx.lt > after_lt
        ]
        return matching[:limit]

    @property
    def pending_count(self) -> int:
        return len(self._queue)
