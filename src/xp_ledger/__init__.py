"""XP Ledger: owner-written experience points with an off-chain audit trail.

A single privileged writer adds XP to user balances held by a message-driven
ledger program; anyone may query them.  The reconciliation engine drives
those writes through an asynchronous, lossy delivery model and mirrors every
attempt into a SQLite audit store.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ---------------------------------------------------------------------------
# Package version, read from pyproject.toml via importlib.metadata.
#
# Falls back to the current release string when the package is imported
# from a source checkout without being installed.
# ---------------------------------------------------------------------------
try:
    __version__: str = version("xp_ledger")
except PackageNotFoundError:
    __version__ = "0.1.0"
