"""Wallets file: owner key, user keys and the deployed contract address.

Layout of ``wallets.json``::

    {
      "contract": "0:ab12…" | null,
      "owner": {"address": "0:…", "public_key": "<hex>", "secret_key": "<hex>"},
      "users": [{"id": 1, "address": "0:…", "public_key": "<hex>", "secret_key": "<hex>"}],
      "next_user_id": 2
    }

User secret keys are optional: targets only need an address.  Entries with
an unparsable address are skipped with a warning on load so one bad line
does not block a batch.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from xp_ledger.chain.address import Address
from xp_ledger.chain.wallet import Wallet, address_for_public_key

logger = logging.getLogger(__name__)


class WalletsFileError(Exception):
    """The wallets file is missing, unreadable or lacks an owner."""


@dataclass
class WalletEntry:
    """One key pair (or bare address) from the wallets file."""

    id: int
    address: Address
    public_key: bytes | None = None
    secret_key: str | None = field(default=None, repr=False)

    @classmethod
    def from_wallet(cls, entry_id: int, wallet: Wallet) -> WalletEntry:
        return cls(
            id=entry_id,
            address=wallet.address,
            public_key=wallet.public_key,
            secret_key=wallet.secret_hex,
        )

    def wallet(self) -> Wallet:
        if not self.secret_key:
            raise WalletsFileError(f"wallet {self.id} has no secret key")
        return Wallet.from_secret_hex(self.secret_key, self.address.workchain)

    def problems(self) -> list[str]:
        """Consistency problems between address, public key and secret key."""
        found: list[str] = []
        if self.public_key is not None:
            derived = address_for_public_key(self.public_key, self.address.workchain)
            if derived != self.address:
                found.append(f"wallet {self.id}: address does not derive from public key")
        if self.secret_key:
            try:
                wallet = self.wallet()
            except ValueError as exc:
                found.append(f"wallet {self.id}: invalid secret key ({exc})")
            else:
                if wallet.address != self.address:
                    found.append(f"wallet {self.id}: secret key belongs to {wallet.address}")
        return found

    def to_json(self, *, with_id: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "address": str(self.address),
            "public_key": self.public_key.hex() if self.public_key else None,
            "secret_key": self.secret_key,
        }
        if with_id:
            data = {"id": self.id, **data}
        return data

    @classmethod
    def from_json(cls, raw: dict[str, Any], default_id: int = 0) -> WalletEntry:
        public_key = raw.get("public_key")
        return cls(
            id=int(raw.get("id", default_id)),
            address=Address.parse(str(raw["address"])),
            public_key=bytes.fromhex(public_key) if public_key else None,
            secret_key=raw.get("secret_key") or None,
        )


@dataclass
class WalletsFile:
    owner: WalletEntry
    users: list[WalletEntry] = field(default_factory=list)
    contract: Address | None = None
    next_user_id: int = 1

    def to_json(self) -> dict[str, Any]:
        return {
            "contract": str(self.contract) if self.contract else None,
            "owner": self.owner.to_json(with_id=False),
            "users": [user.to_json() for user in self.users],
            "next_user_id": self.next_user_id,
        }

    def select_users(self, ids: Iterable[int] | None = None) -> list[WalletEntry]:
        """Users whose id is in ``ids`` (all users when ``ids`` is None)."""
        if ids is None:
            return list(self.users)
        wanted = set(ids)
        selected = [user for user in self.users if user.id in wanted]
        missing = wanted - {user.id for user in selected}
        if missing:
            logger.warning("Unknown user ids ignored: %s", sorted(missing))
        return selected

    def add_users(self, count: int) -> list[WalletEntry]:
        """Generate ``count`` new user key pairs."""
        created = []
        for _ in range(count):
            entry = WalletEntry.from_wallet(self.next_user_id, Wallet.generate())
            self.users.append(entry)
            created.append(entry)
            self.next_user_id += 1
        return created

    def problems(self) -> list[str]:
        found = self.owner.problems()
        for user in self.users:
            found.extend(user.problems())
        return found


def generate_wallets(user_count: int) -> WalletsFile:
    """Fresh owner plus ``user_count`` users."""
    wallets = WalletsFile(owner=WalletEntry.from_wallet(0, Wallet.generate()))
    wallets.add_users(user_count)
    return wallets


def load_wallets(path: Path | str) -> WalletsFile:
    """Read a wallets file.

    Raises:
        WalletsFileError: If the file is missing, not JSON, or has no usable owner.
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise WalletsFileError(f"wallets file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise WalletsFileError(f"cannot read wallets file {path}: {exc}") from exc

    try:
        owner = WalletEntry.from_json(raw["owner"])
    except (KeyError, TypeError, ValueError) as exc:
        raise WalletsFileError(f"wallets file {path} has no valid owner: {exc}") from exc

    users: list[WalletEntry] = []
    for index, item in enumerate(raw.get("users", []), start=1):
        try:
            users.append(WalletEntry.from_json(item, default_id=index))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping wallets entry %d: %s", index, exc)

    contract_text = raw.get("contract")
    try:
        contract = Address.parse(contract_text) if contract_text else None
    except ValueError as exc:
        raise WalletsFileError(f"invalid contract address in {path}: {exc}") from exc

    next_user_id = int(raw.get("next_user_id", max((u.id for u in users), default=0) + 1))
    return WalletsFile(owner=owner, users=users, contract=contract, next_user_id=next_user_id)


def save_wallets(wallets: WalletsFile, path: Path | str) -> None:
    """Write the wallets file with owner-only permissions."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(wallets.to_json(), indent=2) + "\n", encoding="utf-8")
    os.chmod(tmp, 0o600)
    tmp.replace(path)
