"""Tests for the wallets file."""

import json
import stat
from pathlib import Path

import pytest

from xp_ledger.chain.address import Address
from xp_ledger.wallets import (
    WalletEntry,
    WalletsFileError,
    generate_wallets,
    load_wallets,
    save_wallets,
)


@pytest.fixture
def wallets_path(tmp_path: Path) -> Path:
    return tmp_path / "wallets.json"


@pytest.mark.unit
class TestGenerate:
    def test_ids_are_sequential(self):
        wallets = generate_wallets(3)

        assert [user.id for user in wallets.users] == [1, 2, 3]
        assert wallets.next_user_id == 4
        assert wallets.problems() == []

    def test_add_users_continues_numbering(self):
        wallets = generate_wallets(2)
        created = wallets.add_users(2)
        assert [user.id for user in created] == [3, 4]

    def test_select_users(self):
        wallets = generate_wallets(3)

        assert len(wallets.select_users()) == 3
        assert [u.id for u in wallets.select_users([3, 1, 9])] == [1, 3]


@pytest.mark.unit
class TestPersistence:
    def test_save_and_load(self, wallets_path: Path):
        wallets = generate_wallets(2)
        wallets.contract = Address(0, b"\x0c" * 32)
        save_wallets(wallets, wallets_path)

        loaded = load_wallets(wallets_path)
        assert loaded.owner.address == wallets.owner.address
        assert loaded.contract == wallets.contract
        assert [u.address for u in loaded.users] == [u.address for u in wallets.users]
        assert loaded.owner.wallet().address == wallets.owner.address

    def test_file_is_owner_only(self, wallets_path: Path):
        save_wallets(generate_wallets(1), wallets_path)
        assert stat.S_IMODE(wallets_path.stat().st_mode) == 0o600

    def test_missing_file(self, wallets_path: Path):
        with pytest.raises(WalletsFileError, match="not found"):
            load_wallets(wallets_path)

    def test_not_json(self, wallets_path: Path):
        wallets_path.write_text("{", encoding="utf-8")
        with pytest.raises(WalletsFileError):
            load_wallets(wallets_path)

    def test_missing_owner(self, wallets_path: Path):
        wallets_path.write_text(json.dumps({"users": []}), encoding="utf-8")
        with pytest.raises(WalletsFileError, match="owner"):
            load_wallets(wallets_path)

    def test_bad_user_skipped(self, wallets_path: Path, caplog):
        data = generate_wallets(1).to_json()
        data["users"].append({"id": 2, "address": "garbage"})
        wallets_path.write_text(json.dumps(data), encoding="utf-8")

        loaded = load_wallets(wallets_path)

        assert [u.id for u in loaded.users] == [1]
        assert "Skipping wallets entry 2" in caplog.text

    def test_address_only_user(self, wallets_path: Path):
        data = generate_wallets(0).to_json()
        data["users"] = [{"address": "0:" + "ab" * 32}]
        wallets_path.write_text(json.dumps(data), encoding="utf-8")

        (user,) = load_wallets(wallets_path).users
        assert user.id == 1
        with pytest.raises(WalletsFileError, match="no secret key"):
            user.wallet()


@pytest.mark.unit
class TestProblems:
    def test_mismatched_public_key(self):
        wallets = generate_wallets(2)
        wallets.users[0].public_key = wallets.users[1].public_key

        assert wallets.problems() == ["wallet 1: address does not derive from public key"]

    def test_foreign_secret_key(self):
        wallets = generate_wallets(2)
        entry = WalletEntry(
            id=7, address=wallets.users[0].address, secret_key=wallets.users[1].secret_key
        )
        (problem,) = entry.problems()
        assert problem.startswith("wallet 7: secret key belongs to")

    def test_invalid_secret_key(self):
        entry = WalletEntry(id=5, address=Address(0, b"\x01" * 32), secret_key="zz")
        (problem,) = entry.problems()
        assert "invalid secret key" in problem
