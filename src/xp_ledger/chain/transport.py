"""Ledger transports.

A transport moves signed messages to a ledger node and brings query results
back.  It knows nothing about XP: :class:`xp_ledger.client.XPClient` builds
the messages and decodes the stacks.

Two implementations ship:

- :class:`SandboxTransport` calls an in-process :class:`LedgerSandbox`.
- :class:`HttpTransport` speaks JSON-RPC to a ledger node over httpx (the
  node in :mod:`xp_ledger.chain.node` serves exactly this protocol).

Both are async context managers::

    async with HttpTransport(endpoint="http://127.0.0.1:8081") as transport:
        exit_code, stack = await transport.run_get_method(address, "get_version", [])

Every failure reaching the network layer surfaces as :class:`TransportError`
(``RateLimitedError`` for HTTP 429), a refused message as
:class:`SubmissionError`, and a response that does not match the protocol as
:class:`DecodeError`.  Nothing is ever replaced by a default value.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from xp_ledger.chain.address import Address
from xp_ledger.chain.cells import Cell, to_boc_base64
from xp_ledger.chain.codec import StackItem, stack_from_json, stack_to_json
from xp_ledger.chain.errors import (
    DecodeError,
    RateLimitedError,
    SubmissionError,
    TransportError,
)
from xp_ledger.chain.sandbox import LedgerSandbox, TransactionRecord
from xp_ledger.chain.wallet import SignedMessage

logger = logging.getLogger(__name__)


class LedgerTransport(ABC):
    """Async access to a ledger node."""

    async def __aenter__(self) -> LedgerTransport:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release network resources (no-op by default)."""

    @abstractmethod
    async def send_message(self, message: SignedMessage) -> str:
        """Submit a signed message; returns the envelope hash in hex."""

    @abstractmethod
    async def deploy(self, message: SignedMessage, code: Cell, *, salt: int = 0) -> Address:
        """Deploy ``code`` and deliver ``message`` to it; returns the contract address."""

    @abstractmethod
    async def run_get_method(
        self, address: Address, method: str, args: Sequence[StackItem]
    ) -> tuple[int, list[StackItem]]:
        """Run a get method; returns ``(exit_code, stack)``."""

    @abstractmethod
    async def get_transactions(
        self, address: Address, *, limit: int = 20, after_lt: int = 0
    ) -> list[TransactionRecord]:
        """Transactions of ``address`` newer than ``after_lt``, newest first."""

    @abstractmethod
    async def get_balance(self, address: Address) -> int:
        """Account balance in nano."""


# =============================================================================
# SANDBOX
# =============================================================================


@dataclass
class SandboxTransport(LedgerTransport):
    """Transport over an in-process :class:`LedgerSandbox`."""

    sandbox: LedgerSandbox

    async def send_message(self, message: SignedMessage) -> str:
        return self.sandbox.submit(message)

    async def deploy(self, message: SignedMessage, code: Cell, *, salt: int = 0) -> Address:
        return self.sandbox.deploy(message, code, salt=salt)

    async def run_get_method(
        self, address: Address, method: str, args: Sequence[StackItem]
    ) -> tuple[int, list[StackItem]]:
        return self.sandbox.run_get_method(address, method, args)

    async def get_transactions(
        self, address: Address, *, limit: int = 20, after_lt: int = 0
    ) -> list[TransactionRecord]:
        return self.sandbox.get_transactions(address, limit=limit, after_lt=after_lt)

    async def get_balance(self, address: Address) -> int:
        return self.sandbox.get_balance(address)


# =============================================================================
# HTTP (JSON-RPC)
# =============================================================================


@dataclass
class HttpTransport(LedgerTransport):
    """JSON-RPC transport over HTTP.

    Requests are ``POST {endpoint}/jsonRPC`` with
    ``{"id": n, "method": ..., "params": {...}}``.  Responses are
    ``{"ok": true, "result": ...}`` or ``{"ok": false, "error": ..., "code": ...}``.

    Attributes:
        endpoint: Base URL of the ledger node.
        api_key: Optional key sent as ``X-API-Key``.
        timeout: Per-request timeout in seconds.
    """

    endpoint: str
    api_key: str | None = None
    timeout: float = 10.0

    _http_client: httpx.AsyncClient | None = field(default=None, repr=False)
    _request_id: int = field(default=0, repr=False)

    async def __aenter__(self) -> HttpTransport:
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        self._http_client = httpx.AsyncClient(
            base_url=self.endpoint, timeout=self.timeout, headers=headers
        )
        return self

    async def aclose(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """
        Get the HTTP client, ensuring it's been initialized.

        Raises:
            RuntimeError: If accessed outside of async context manager.
        """
        if self._http_client is None:
            raise RuntimeError(
                "HttpTransport must be used as an async context manager. "
                "Use 'async with HttpTransport(endpoint) as transport:'"
            )
        return self._http_client

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        self._request_id += 1
        payload = {"id": self._request_id, "method": method, "params": params}
        try:
            response = await self.http_client.post("/jsonRPC", json=payload)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method}: request to {self.endpoint} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method}: cannot reach {self.endpoint}: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(
                f"{method}: rate limited by {self.endpoint}",
                retry_after=_retry_after(response),
            )
        if response.status_code >= 500:
            raise TransportError(f"{method}: server error {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise DecodeError(
                f"{method}: invalid JSON response (status {response.status_code})"
            ) from e
        if not isinstance(data, dict) or "ok" not in data:
            raise DecodeError(f"{method}: response is not a JSON-RPC envelope")

        if not data["ok"]:
            error = str(data.get("error", "unknown error"))
            if data.get("code") == "rejected":
                raise SubmissionError(error)
            raise TransportError(f"{method}: {error}")
        if response.status_code != 200:
            raise TransportError(f"{method}: unexpected status {response.status_code}")
        return data.get("result")

    async def send_message(self, message: SignedMessage) -> str:
        result = await self._call("sendMessage", {"message": message.to_json()})
        return _expect_str(result, "hash")

    async def deploy(self, message: SignedMessage, code: Cell, *, salt: int = 0) -> Address:
        result = await self._call(
            "deployContract",
            {"message": message.to_json(), "code": to_boc_base64(code), "salt": salt},
        )
        try:
            return Address.parse(_expect_str(result, "address"))
        except ValueError as e:
            raise DecodeError(f"deployContract: invalid address: {e}") from e

    async def run_get_method(
        self, address: Address, method: str, args: Sequence[StackItem]
    ) -> tuple[int, list[StackItem]]:
        result = await self._call(
            "runGetMethod",
            {"address": str(address), "method": method, "stack": stack_to_json(args)},
        )
        if not isinstance(result, dict):
            raise DecodeError("runGetMethod: result must be an object")
        try:
            exit_code = int(result["exit_code"])
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError("runGetMethod: missing exit_code") from e
        return exit_code, stack_from_json(result.get("stack"))

    async def get_transactions(
        self, address: Address, *, limit: int = 20, after_lt: int = 0
    ) -> list[TransactionRecord]:
        result = await self._call(
            "getTransactions", {"address": str(address), "limit": limit, "after_lt": after_lt}
        )
        if not isinstance(result, list):
            raise DecodeError("getTransactions: result must be a list")
        return [TransactionRecord.from_json(item) for item in result]

    async def get_balance(self, address: Address) -> int:
        result = await self._call("getAddressBalance", {"address": str(address)})
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"getAddressBalance: invalid balance {result!r}") from e


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _expect_str(result: Any, key: str) -> str:
    if not isinstance(result, dict) or not isinstance(result.get(key), str):
        raise DecodeError(f"response result is missing {key!r}")
    return str(result[key])
