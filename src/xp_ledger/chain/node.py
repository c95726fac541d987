"""
HTTP ledger node.

Serves a :class:`LedgerSandbox` over the JSON-RPC protocol spoken by
:class:`xp_ledger.chain.transport.HttpTransport`:

    POST /jsonRPC   {"id": 1, "method": "runGetMethod", "params": {...}}
    GET  /health

Methods: ``sendMessage``, ``deployContract``, ``runGetMethod``,
``getTransactions``, ``getAddressBalance``.  Every JSON-RPC response is
``{"ok": true, "result": ...}`` or ``{"ok": false, "error": "...", "code": ...}``
where ``code`` is ``"rejected"`` for messages the ledger refused and
``"bad_request"`` for malformed parameters.

An optional API key and a per-second request limit mirror what public ledger
endpoints enforce, so clients can be exercised against 401 and 429 locally.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from xp_ledger import __version__
from xp_ledger.chain.address import Address
from xp_ledger.chain.cells import from_boc_base64
from xp_ledger.chain.codec import stack_from_json, stack_to_json
from xp_ledger.chain.errors import DecodeError, SubmissionError
from xp_ledger.chain.sandbox import LedgerSandbox
from xp_ledger.chain.wallet import SignedMessage

logger = logging.getLogger(__name__)

# ============================================================================
# REQUEST MODELS
# ============================================================================


class JsonRpcRequest(BaseModel):
    """
    JSON-RPC request envelope.

    Attributes:
        id: Caller-chosen request id, echoed back.
        method: RPC method name.
        params: Method parameters.
    """

    id: int | str | None = None
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# RATE LIMITING
# ============================================================================


class RequestLimiter:
    """Sliding one-second window request counter."""

    def __init__(self, per_second: int) -> None:
        self.per_second = per_second
        self._stamps: deque[float] = deque()

    def allow(self) -> bool:
        now = time.monotonic()
        while self._stamps and now - self._stamps[0] >= 1.0:
            self._stamps.popleft()
        if len(self._stamps) >= self.per_second:
            return False
        self._stamps.append(now)
        return True


# ============================================================================
# APPLICATION
# ============================================================================


def _ok(request_id: Any, result: Any) -> dict[str, Any]:
    return {"id": request_id, "ok": True, "result": result}


def _fail(request_id: Any, error: str, code: str, status: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status, content={"id": request_id, "ok": False, "error": error, "code": code}
    )


def _address(params: dict[str, Any], key: str = "address") -> Address:
    value = params.get(key)
    if not isinstance(value, str):
        raise ValueError(f"parameter {key!r} must be an address string")
    return Address.parse(value)


def create_app(
    sandbox: LedgerSandbox,
    *,
    api_key: str | None = None,
    requests_per_second: int | None = None,
) -> FastAPI:
    """Build the FastAPI app serving ``sandbox``."""
    app = FastAPI(title="XP Ledger Node", version=__version__)
    limiter = RequestLimiter(requests_per_second) if requests_per_second else None

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness check with queue depth."""
        return {
            "status": "ok",
            "version": __version__,
            "pending_messages": sandbox.pending_count,
        }

    @app.post("/jsonRPC", response_model=None)
    async def json_rpc(rpc: JsonRpcRequest, request: Request) -> dict[str, Any] | JSONResponse:
        """Dispatch one JSON-RPC call to the sandbox."""
        if api_key and request.headers.get("X-API-Key") != api_key:
            return _fail(rpc.id, "invalid API key", "unauthorized", status=401)
        if limiter and not limiter.allow():
            response = _fail(rpc.id, "too many requests", "rate_limited", status=429)
            response.headers["Retry-After"] = "1"
            return response

        params = rpc.params
        try:
            if rpc.method == "sendMessage":
                message = SignedMessage.from_json(params.get("message"))
                return _ok(rpc.id, {"hash": sandbox.submit(message)})

            if rpc.method == "deployContract":
                message = SignedMessage.from_json(params.get("message"))
                code = from_boc_base64(str(params.get("code", "")))
                address = sandbox.deploy(message, code, salt=int(params.get("salt", 0)))
                return _ok(rpc.id, {"address": str(address)})

            if rpc.method == "runGetMethod":
                exit_code, stack = sandbox.run_get_method(
                    _address(params),
                    str(params.get("method", "")),
                    stack_from_json(params.get("stack", [])),
                )
                return _ok(rpc.id, {"exit_code": exit_code, "stack": stack_to_json(stack)})

            if rpc.method == "getTransactions":
                transactions = sandbox.get_transactions(
                    _address(params),
                    limit=int(params.get("limit", 20)),
                    after_lt=int(params.get("after_lt", 0)),
                )
                return _ok(rpc.id, [tx.to_json() for tx in transactions])

            if rpc.method == "getAddressBalance":
                return _ok(rpc.id, sandbox.get_balance(_address(params)))

        except SubmissionError as e:
            logger.info("Rejected %s: %s", rpc.method, e)
            return _fail(rpc.id, str(e), "rejected")
        except (DecodeError, ValueError, TypeError) as e:
            return _fail(rpc.id, f"invalid params: {e}", "bad_request")

        return _fail(rpc.id, f"unknown method {rpc.method!r}", "unknown_method", status=404)

    return app


def serve(
    sandbox: LedgerSandbox,
    *,
    host: str = "127.0.0.1",
    port: int = 8081,
    api_key: str | None = None,
    requests_per_second: int | None = None,
) -> None:
    """Run the node with uvicorn until interrupted."""
    import uvicorn

    app = create_app(sandbox, api_key=api_key, requests_per_second=requests_per_second)
    logger.info("Starting ledger node on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port)
