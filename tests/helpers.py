"""
Shared test helpers.

Kept out of ``conftest.py`` so test modules can import them directly.
"""

from xp_ledger.chain.codec import Initialize, encode_message
from xp_ledger.chain.contract import DEFAULT_CODE
from xp_ledger.chain.sandbox import LedgerSandbox, derive_contract_address, to_nano
from xp_ledger.chain.wallet import Wallet

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually driven Unix clock with an instant async ``sleep``."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def deploy_contract(
    sandbox: LedgerSandbox,
    owner: Wallet,
    clock: FakeClock,
    *,
    salt: int = 0,
    value: int = to_nano("0.1"),
):
    """Deploy the default program from ``owner`` and wait out the delivery latency."""
    address = derive_contract_address(DEFAULT_CODE, salt, owner.workchain)
    message = owner.sign_message(
        address,
        encode_message(Initialize()),
        value=value,
        valid_until=int(clock()) + 60,
    )
    sandbox.deploy(message, DEFAULT_CODE, salt=salt)
    clock.advance(sandbox.latency)
    return address
