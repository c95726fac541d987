"""
Typed async client for the XP ledger.

:class:`XPClient` builds message bodies with the codec, signs them with the
owner's :class:`Wallet` and submits them through a :class:`LedgerTransport`.
Getters decode get-method stacks into Python values.

Every call either returns a decoded value or raises:

- :class:`TransportError` on network failure or when ``timeout`` elapses,
- :class:`DecodeError` when a response does not have the expected shape,
- a :class:`ProtocolError` subclass when the ledger reports a non-zero exit
  code for a query,
- :class:`SubmissionError` when the node refuses a message.

Nothing is silently replaced by a default; the only "empty" result is
:meth:`XPClient.get_user_history` for a user with no retained history.

Example:
    async with SandboxTransport(sandbox) as transport:
        client = XPClient(transport, contract, wallet=owner)
        sent = await client.send_add_xp(user, 10, op_id=new_op_id())
        print(await client.get_xp(user))
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar, cast

from xp_ledger.chain.address import Address, load_address
from xp_ledger.chain.cells import Cell
from xp_ledger.chain.codec import (
    AddXP,
    AddXPWithId,
    HistoryEntry,
    Initialize,
    Message,
    StackItem,
    Upgrade,
    decode_history_map,
    encode_message,
)
from xp_ledger.chain.errors import DecodeError, TransportError, error_for_exit_code
from xp_ledger.chain.sandbox import TransactionRecord, derive_contract_address, to_nano
from xp_ledger.chain.transport import LedgerTransport
from xp_ledger.chain.wallet import Wallet

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OP_FEE = to_nano("0.2")
DEFAULT_DEPLOY_FEE = to_nano("0.1")
MESSAGE_TTL = 60  # seconds a signed envelope stays valid


def new_op_id() -> int:
    """Fresh random 256-bit idempotency key."""
    return secrets.randbits(256)


@dataclass(frozen=True)
class SentMessage:
    """Receipt for a submitted message.

    Attributes:
        message_hash: Envelope hash returned by the node.
        body_hash: Hash of the body cell; matches
            :attr:`TransactionRecord.body_hash` once processed.
        op_id: Idempotency key carried by the message, if any.
        value: Attached value in nano.
    """

    message_hash: str
    body_hash: str
    op_id: int | None
    value: int


class XPClient:
    """Async client bound to one contract address and (optionally) a signer."""

    def __init__(
        self,
        transport: LedgerTransport,
        contract_address: Address | None,
        wallet: Wallet | None = None,
        *,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.contract_address = contract_address
        self.wallet = wallet
        self.timeout = timeout
        self.clock = clock

    # ── Plumbing ──────────────────────────────────────────────────────────────

    @property
    def contract(self) -> Address:
        if self.contract_address is None:
            raise RuntimeError("XPClient has no contract address; deploy or configure one")
        return self.contract_address

    @property
    def signer(self) -> Wallet:
        if self.wallet is None:
            raise RuntimeError("XPClient needs a wallet to send messages")
        return self.wallet

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{what} timed out after {self.timeout}s") from exc

    async def _get(self, method: str, args: Sequence[StackItem] = ()) -> list[StackItem]:
        exit_code, stack = await self._bounded(
            self.transport.run_get_method(self.contract, method, list(args)), method
        )
        if exit_code != 0:
            raise error_for_exit_code(exit_code, f"{method} failed with exit code {exit_code}")
        return stack

    @staticmethod
    def _top(stack: Sequence[StackItem], method: str, *kinds: str) -> StackItem:
        if not stack:
            raise DecodeError(f"{method} returned an empty stack")
        item = stack[0]
        if item.kind not in kinds:
            raise DecodeError(f"{method} returned {item.kind}, expected {'/'.join(kinds)}")
        return item

    async def _get_num(self, method: str, args: Sequence[StackItem] = ()) -> int:
        item = self._top(await self._get(method, args), method, "num")
        return cast(int, item.value)

    # ── Queries ───────────────────────────────────────────────────────────────

    async def get_xp(self, user: Address) -> int:
        return await self._get_num("get_xp", [StackItem.address(user)])

    async def get_xp_key(self, user: Address) -> int:
        return await self._get_num("get_xp_key", [StackItem.address(user)])

    async def get_user_history(self, user: Address) -> dict[int, HistoryEntry]:
        """Retained history of ``user`` keyed by opId, oldest first."""
        stack = await self._get("get_user_history", [StackItem.address(user)])
        item = self._top(stack, "get_user_history", "cell", "null")
        if item.kind == "null":
            return {}
        return {entry.op_id: entry for entry in decode_history_map(cast(Cell, item.value))}

    async def get_owner(self) -> Address:
        item = self._top(await self._get("get_owner"), "get_owner", "slice", "cell")
        return load_address(cast(Cell, item.value).begin_parse())

    async def get_version(self) -> int:
        return await self._get_num("get_version")

    async def get_last_op_time(self) -> int:
        return await self._get_num("get_last_op_time")

    async def get_level(self, xp: int) -> int:
        return await self._get_num("get_level", [StackItem.num(xp)])

    async def get_rank(self, xp: int) -> int:
        return await self._get_num("get_rank", [StackItem.num(xp)])

    async def get_reputation(
        self, xp: int, days_active: int, rating: int, behavior_weight: int
    ) -> int:
        args = [StackItem.num(v) for v in (xp, days_active, rating, behavior_weight)]
        return await self._get_num("get_reputation", args)

    async def get_wallet_balance(self) -> int:
        return await self._bounded(
            self.transport.get_balance(self.signer.address), "getAddressBalance"
        )

    async def get_transactions(
        self, *, limit: int = 20, after_lt: int = 0
    ) -> list[TransactionRecord]:
        return await self._bounded(
            self.transport.get_transactions(self.contract, limit=limit, after_lt=after_lt),
            "getTransactions",
        )

    async def latest_lt(self) -> int:
        """Logical time of the contract's newest transaction (``0`` if none)."""
        transactions = await self.get_transactions(limit=1)
        return transactions[0].lt if transactions else 0

    async def find_transaction(self, body_hash: str, *, after_lt: int = 0) -> TransactionRecord | None:
        """Find the transaction that processed a body, looking only past ``after_lt``.

        A resent body can produce several transactions; the successful one
        wins over later ``DuplicateOp`` rejections.
        """
        matches = [
            tx
            for tx in await self.get_transactions(limit=50, after_lt=after_lt)
            if tx.body_hash == body_hash
        ]
        for tx in matches:
            if tx.success:
                return tx
        return matches[0] if matches else None

    # ── Senders ───────────────────────────────────────────────────────────────

    async def _send(self, message: Message, value: int, op_id: int | None) -> SentMessage:
        body = encode_message(message)
        envelope = self.signer.sign_message(
            self.contract,
            body,
            value=value,
            valid_until=int(self.clock()) + MESSAGE_TTL,
        )
        message_hash = await self._bounded(self.transport.send_message(envelope), "sendMessage")
        return SentMessage(
            message_hash=message_hash, body_hash=body.hash().hex(), op_id=op_id, value=value
        )

    async def send_add_xp(
        self,
        user: Address,
        amount: int,
        *,
        op_id: int | None = None,
        value: int = DEFAULT_OP_FEE,
    ) -> SentMessage:
        """Submit AddXP (with an opId when given)."""
        message: Message
        if op_id is None:
            message = AddXP(user=user, amount=amount)
        else:
            message = AddXPWithId(user=user, amount=amount, op_id=op_id)
        logger.debug("Sending AddXP %d to %s (value %d)", amount, user.short(), value)
        return await self._send(message, value, op_id)

    async def send_upgrade(self, new_code: Cell, *, value: int = DEFAULT_OP_FEE) -> SentMessage:
        return await self._send(Upgrade(new_code=new_code), value, None)

    async def deploy(
        self, code: Cell, *, salt: int = 0, value: int = DEFAULT_DEPLOY_FEE
    ) -> Address:
        """Deploy ``code`` with an Initialize message and bind this client to it."""
        address = derive_contract_address(code, salt, self.signer.workchain)
        envelope = self.signer.sign_message(
            address,
            encode_message(Initialize()),
            value=value,
            valid_until=int(self.clock()) + MESSAGE_TTL,
        )
        deployed = await self._bounded(
            self.transport.deploy(envelope, code, salt=salt), "deployContract"
        )
        self.contract_address = deployed
        return deployed
