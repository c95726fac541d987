"""
Shared pytest fixtures for the XP ledger test suite.

This module provides fixtures that are automatically available to all test files:
- Temporary audit databases through the config system's test helper
- A fake clock whose ``sleep`` advances time instantly
- A sandbox ledger with a funded owner and a deployed contract
- Owner, stranger and user wallets

Every fixture is function-scoped so tests never share ledger or DB state.
"""

import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from xp_ledger.chain.contract import ContractParams
from xp_ledger.chain.sandbox import LedgerSandbox, to_nano
from xp_ledger.chain.transport import SandboxTransport
from xp_ledger.chain.wallet import Wallet
from xp_ledger.client import XPClient
from xp_ledger.config import use_test_database
from xp_ledger.db import init_database

from tests.helpers import FakeClock, deploy_contract

# ============================================================================
# CLOCK
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """
    Create a temporary database file for testing.

    Uses the config system's ``use_test_database`` helper so every module that
    resolves the database path sees the temporary file.

    Yields:
        Path to temporary database file
    """
    temp_dir = tempfile.mkdtemp()
    temp_db = Path(temp_dir) / "test_audit.db"

    with use_test_database(temp_db):
        yield temp_db

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def test_db(temp_db_path: Path) -> Generator[Path, None, None]:
    """Initialize the audit schema in the temporary database."""
    init_database()
    yield temp_db_path


# ============================================================================
# WALLETS
# ============================================================================


@pytest.fixture
def owner() -> Wallet:
    return Wallet.generate()


@pytest.fixture
def stranger() -> Wallet:
    return Wallet.generate()


@pytest.fixture
def users() -> list[Wallet]:
    return [Wallet.generate() for _ in range(3)]


# ============================================================================
# LEDGER FIXTURES
# ============================================================================


@pytest.fixture
def sandbox(clock: FakeClock, owner: Wallet) -> LedgerSandbox:
    """Sandbox node with a two-second delivery latency and a funded owner."""
    node = LedgerSandbox(clock=clock, latency=2.0, params=ContractParams(min_cooldown=10))
    node.fund(owner.address, to_nano(100))
    return node


@pytest.fixture
def contract(sandbox: LedgerSandbox, owner: Wallet, clock: FakeClock):
    """Address of an initialized contract owned by ``owner``."""
    return deploy_contract(sandbox, owner, clock)


@pytest.fixture
def transport(sandbox: LedgerSandbox) -> SandboxTransport:
    return SandboxTransport(sandbox)


@pytest.fixture
def client(transport: SandboxTransport, contract, owner: Wallet, clock: FakeClock) -> XPClient:
    return XPClient(transport, contract, owner, clock=clock)
