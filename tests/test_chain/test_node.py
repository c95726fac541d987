"""
Tests for the FastAPI ledger node.

Raw HTTP behaviour is checked with FastAPI's TestClient; the full client
stack (XPClient -> HttpTransport -> node -> sandbox) runs in-process through
httpx.ASGITransport.
"""

from collections.abc import AsyncGenerator

import httpx
import pytest
from fastapi.testclient import TestClient

from xp_ledger import __version__
from xp_ledger.chain.codec import StackItem
from xp_ledger.chain.contract import DEFAULT_CODE
from xp_ledger.chain.errors import InvalidArgumentError, NotOwnerError, SubmissionError
from xp_ledger.chain.node import RequestLimiter, create_app
from xp_ledger.chain.transport import HttpTransport
from xp_ledger.client import XPClient, new_op_id


@pytest.fixture
def app(sandbox):
    return create_app(sandbox)


@pytest.fixture
def http(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
async def http_transport(app) -> AsyncGenerator[HttpTransport, None]:
    async with HttpTransport("http://node") as transport:
        await transport.http_client.aclose()
        transport._http_client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://node"
        )
        yield transport


def _rpc(http: TestClient, method: str, /, **params):
    return http.post("/jsonRPC", json={"id": 1, "method": method, "params": params})


# =============================================================================
# RAW HTTP
# =============================================================================


@pytest.mark.unit
class TestEndpoints:
    def test_health(self, http: TestClient):
        response = http.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "version": __version__,
            "pending_messages": 0,
        }

    def test_balance(self, http: TestClient, owner, sandbox):
        response = _rpc(http, "getAddressBalance", address=str(owner.address))

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["result"] == sandbox.get_balance(owner.address)

    def test_run_get_method(self, http: TestClient, contract, owner):
        response = _rpc(http, "runGetMethod", address=str(contract), method="get_version", stack=[])

        assert response.json()["result"] == {"exit_code": 0, "stack": [["num", "0x1"]]}

    def test_unknown_method(self, http: TestClient):
        response = _rpc(http, "mineBlock")

        assert response.status_code == 404
        assert response.json()["code"] == "unknown_method"

    def test_bad_address_is_bad_request(self, http: TestClient):
        response = _rpc(http, "getAddressBalance", address="nope")

        assert response.status_code == 400
        assert response.json()["code"] == "bad_request"

    def test_malformed_message_is_bad_request(self, http: TestClient):
        response = _rpc(http, "sendMessage", message={"sender": "0:00"})

        assert response.status_code == 400
        assert response.json()["code"] == "bad_request"

    def test_missing_method_field_is_validation_error(self, http: TestClient):
        response = http.post("/jsonRPC", json={"id": 1})
        assert response.status_code == 422


@pytest.mark.unit
class TestAccessControl:
    def test_api_key_required(self, sandbox, owner):
        http = TestClient(create_app(sandbox, api_key="k"))

        denied = _rpc(http, "getAddressBalance", address=str(owner.address))
        allowed = http.post(
            "/jsonRPC",
            json={"method": "getAddressBalance", "params": {"address": str(owner.address)}},
            headers={"X-API-Key": "k"},
        )

        assert denied.status_code == 401
        assert denied.json()["code"] == "unauthorized"
        assert allowed.status_code == 200

    def test_rate_limit_returns_retry_after(self, sandbox, owner):
        http = TestClient(create_app(sandbox, requests_per_second=2))
        statuses = [
            _rpc(http, "getAddressBalance", address=str(owner.address)).status_code
            for _ in range(3)
        ]

        assert statuses == [200, 200, 429]
        limited = _rpc(http, "getAddressBalance", address=str(owner.address))
        assert limited.headers["Retry-After"] == "1"

    def test_request_limiter_window(self):
        limiter = RequestLimiter(1)
        assert limiter.allow()
        assert not limiter.allow()


# =============================================================================
# FULL CLIENT STACK
# =============================================================================


@pytest.mark.integration
class TestClientOverHttp:
    @pytest.mark.asyncio
    async def test_add_xp_roundtrip(self, http_transport, contract, owner, users, clock):
        client = XPClient(http_transport, contract, owner, clock=clock)
        op_id = new_op_id()

        sent = await client.send_add_xp(users[0].address, 5, op_id=op_id)
        clock.advance(2)

        assert await client.get_xp(users[0].address) == 5
        history = await client.get_user_history(users[0].address)
        assert history[op_id].amount == 5
        tx = await client.find_transaction(sent.body_hash)
        assert tx is not None and tx.success

    @pytest.mark.asyncio
    async def test_deploy_over_http(self, http_transport, sandbox, stranger, clock):
        sandbox.fund(stranger.address, 10**9)
        client = XPClient(http_transport, None, stranger, clock=clock)

        address = await client.deploy(DEFAULT_CODE, salt=42)
        clock.advance(2)

        assert client.contract == address
        assert await client.get_owner() == stranger.address

    @pytest.mark.asyncio
    async def test_submission_refusal_surfaces(self, http_transport, contract, stranger, clock):
        client = XPClient(http_transport, contract, stranger, clock=clock)

        with pytest.raises(SubmissionError, match="insufficient"):
            await client.send_add_xp(stranger.address, 1)

    @pytest.mark.asyncio
    async def test_nonzero_exit_code_maps_to_protocol_error(self, http_transport, contract, clock):
        client = XPClient(http_transport, contract, clock=clock)

        exit_code, stack = await http_transport.run_get_method(
            contract, "get_level", [StackItem.num(-1)]
        )
        assert (exit_code, stack) == (InvalidArgumentError.exit_code, [])
        with pytest.raises(InvalidArgumentError):
            await client.get_level(-1)

    @pytest.mark.asyncio
    async def test_rejected_transaction_visible(self, http_transport, sandbox, contract, users, clock):
        intruder = users[2]
        sandbox.fund(intruder.address, 10**9)
        client = XPClient(http_transport, contract, intruder, clock=clock)

        sent = await client.send_add_xp(intruder.address, 1)
        clock.advance(2)

        tx = await client.find_transaction(sent.body_hash)
        assert tx is not None
        assert tx.exit_code == NotOwnerError.exit_code
