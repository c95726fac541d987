"""
Tests for configuration loading (xp_ledger/config.py).

Covers INI parsing, environment overrides, the reload helper and the test
database context manager.
"""

from pathlib import Path

import pytest

from xp_ledger import config as config_module
from xp_ledger.config import (
    XPLedgerConfig,
    config,
    get_config_status,
    load_config,
    reload_config,
    use_test_database,
)

ENV_VARS = (
    "XP_LEDGER_ENDPOINT",
    "XP_LEDGER_API_KEY",
    "XP_CONTRACT_ADDRESS",
    "XP_REQUEST_TIMEOUT",
    "XP_MIN_COOLDOWN",
    "XP_DB_PATH",
    "XP_JOURNAL_PATH",
    "XP_WALLETS_PATH",
    "XP_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def ini_file(tmp_path: Path) -> Path:
    path = tmp_path / "xp_ledger.ini"
    path.write_text(
        """
[ledger]
endpoint = http://ledger.example:9000
api_key =
min_cooldown = 30

[reconcile]
poll_checks = 4
submit_backoff_seconds = 0.5
base_fee = 300000000

[journal]
enabled = no

[logging]
level = debug
format = json
""",
        encoding="utf-8",
    )
    return path


@pytest.mark.unit
class TestDefaults:
    def test_defaults_without_file(self, tmp_path: Path):
        cfg = load_config(tmp_path / "missing.ini")

        assert isinstance(cfg, XPLedgerConfig)
        assert cfg.ledger.endpoint == "http://127.0.0.1:8081"
        assert cfg.ledger.min_cooldown == 10
        assert cfg.reconcile.poll_checks == 15
        assert cfg.journal.enabled is True

    def test_relative_paths_resolve_under_project_root(self, tmp_path: Path):
        cfg = load_config(tmp_path / "missing.ini")
        assert cfg.database.absolute_path == config_module.PROJECT_ROOT / "data/xp_ledger.db"

    def test_absolute_paths_kept(self, tmp_path: Path):
        cfg = load_config(tmp_path / "missing.ini")
        cfg.wallets.path = str(tmp_path / "w.json")
        assert cfg.wallets.absolute_path == tmp_path / "w.json"


@pytest.mark.unit
class TestIniLoading:
    def test_typed_values(self, ini_file: Path):
        cfg = load_config(ini_file)

        assert cfg.ledger.endpoint == "http://ledger.example:9000"
        assert cfg.ledger.min_cooldown == 30
        assert cfg.reconcile.poll_checks == 4
        assert cfg.reconcile.submit_backoff_seconds == 0.5
        assert cfg.reconcile.base_fee == 300_000_000
        assert cfg.journal.enabled is False

    def test_blank_string_means_unset(self, ini_file: Path):
        assert load_config(ini_file).ledger.api_key is None

    def test_logging_section(self, ini_file: Path):
        cfg = load_config(ini_file)
        assert cfg.logging.level == "DEBUG"
        assert cfg.logging.format == "json"

    def test_unknown_log_format_ignored(self, tmp_path: Path):
        path = tmp_path / "bad.ini"
        path.write_text("[logging]\nformat = fancy\n", encoding="utf-8")
        assert load_config(path).logging.format == "detailed"


@pytest.mark.unit
class TestEnvironmentOverrides:
    def test_env_wins_over_file(self, ini_file: Path, monkeypatch):
        monkeypatch.setenv("XP_LEDGER_ENDPOINT", "http://env:1")
        monkeypatch.setenv("XP_MIN_COOLDOWN", "5")
        monkeypatch.setenv("XP_REQUEST_TIMEOUT", "2.5")
        monkeypatch.setenv("XP_LOG_LEVEL", "warning")

        cfg = load_config(ini_file)

        assert cfg.ledger.endpoint == "http://env:1"
        assert cfg.ledger.min_cooldown == 5
        assert cfg.ledger.request_timeout == 2.5
        assert cfg.logging.level == "WARNING"

    def test_path_overrides(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("XP_DB_PATH", "/tmp/a.db")
        monkeypatch.setenv("XP_JOURNAL_PATH", "/tmp/j.jsonl")
        monkeypatch.setenv("XP_WALLETS_PATH", "/tmp/w.json")
        monkeypatch.setenv("XP_CONTRACT_ADDRESS", "0:" + "ab" * 32)

        cfg = load_config(tmp_path / "missing.ini")

        assert cfg.database.path == "/tmp/a.db"
        assert cfg.journal.path == "/tmp/j.jsonl"
        assert cfg.wallets.path == "/tmp/w.json"
        assert cfg.ledger.contract_address == "0:" + "ab" * 32


@pytest.mark.unit
class TestSingletonHelpers:
    def test_reload_updates_singleton_in_place(self, ini_file: Path):
        original = config.ledger
        try:
            reloaded = reload_config(ini_file)
            assert reloaded is config
            assert config.ledger.endpoint == "http://ledger.example:9000"
        finally:
            config.ledger = original

    def test_use_test_database_restores_path(self, tmp_path: Path):
        before = config.database.path
        with use_test_database(tmp_path / "t.db") as path:
            assert config.database.path == str(path)
        assert config.database.path == before

    def test_config_status(self):
        status = get_config_status()
        assert status["endpoint"] == config.ledger.endpoint
        assert status["database"] == str(config.database.absolute_path)
