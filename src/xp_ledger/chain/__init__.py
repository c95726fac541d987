"""Ledger-side components: cell codec, state machine, signing and transports.

Public surface
--------------
- :class:`Address`, :class:`Cell`  value types on the wire.
- :func:`apply`  the ledger state transition.
- :class:`Wallet`, :class:`SignedMessage`  signing identity and envelope.
- :class:`LedgerSandbox`  in-process ledger node.
- :class:`SandboxTransport`, :class:`HttpTransport`  transports.
"""

from xp_ledger.chain.address import Address
from xp_ledger.chain.cells import Cell, begin_cell
from xp_ledger.chain.contract import ContractParams, apply
from xp_ledger.chain.sandbox import LedgerSandbox, TransactionRecord
from xp_ledger.chain.transport import HttpTransport, LedgerTransport, SandboxTransport
from xp_ledger.chain.wallet import SignedMessage, Wallet

__all__ = [
    "Address",
    "Cell",
    "ContractParams",
    "HttpTransport",
    "LedgerSandbox",
    "LedgerTransport",
    "SandboxTransport",
    "SignedMessage",
    "TransactionRecord",
    "Wallet",
    "apply",
    "begin_cell",
]
