"""Focused tests for ``xp_ledger.db.users_repo``."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from xp_ledger.db import users_repo
from xp_ledger.db.errors import DatabaseReadError, DatabaseWriteError

ADDRESS = "0:" + "ab" * 32


def test_get_or_create_user_is_idempotent(test_db):
    """The same address always maps to the same row."""
    first = users_repo.get_or_create_user(ADDRESS)
    second = users_repo.get_or_create_user(ADDRESS)

    assert first == second
    assert len(users_repo.list_users()) == 1


def test_public_key_filled_once(test_db):
    """A known key fills an empty slot but never replaces an existing key."""
    users_repo.get_or_create_user(ADDRESS)
    users_repo.get_or_create_user(ADDRESS, public_key="11" * 32)
    users_repo.get_or_create_user(ADDRESS, public_key="22" * 32)

    assert users_repo.get_user(ADDRESS)["public_key"] == "11" * 32


def test_new_user_mirror_starts_at_zero(test_db):
    users_repo.get_or_create_user(ADDRESS)
    assert users_repo.get_user(ADDRESS)["xp"] == "0"


def test_update_user_xp_stores_unsigned_text(test_db):
    """Balances above the SQLite integer range survive as text."""
    user_id = users_repo.get_or_create_user(ADDRESS)
    big = 2**64 - 1

    assert users_repo.update_user_xp(user_id, big) is True
    assert int(users_repo.get_user(ADDRESS)["xp"]) == big


def test_update_unknown_user_returns_false(test_db):
    assert users_repo.update_user_xp(999, 5) is False


def test_missing_user_lookup_returns_none(test_db):
    assert users_repo.get_user("0:" + "00" * 32) is None


def test_read_failure_is_typed(test_db):
    with patch("xp_ledger.db.users_repo.connection_scope", side_effect=RuntimeError("boom")):
        with pytest.raises(DatabaseReadError, match="users.get_user"):
            users_repo.get_user(ADDRESS)


def test_write_failure_is_typed(test_db):
    with patch("xp_ledger.db.users_repo.connection_scope", side_effect=RuntimeError("boom")):
        with pytest.raises(DatabaseWriteError) as exc_info:
            users_repo.get_or_create_user(ADDRESS)

    assert exc_info.value.context.operation == "users.get_or_create_user"
    assert isinstance(exc_info.value.cause, RuntimeError)
