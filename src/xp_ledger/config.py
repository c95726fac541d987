"""
XP ledger configuration management.

Settings are loaded from several sources with a clear priority order:

    1. Environment variables (highest priority) - for CI and containers
    2. Config file (config/xp_ledger.ini) - for static deployments
    3. Example config (config/xp_ledger.example.ini) - development fallback
    4. Built-in defaults (lowest priority)

Configuration is loaded once at module import time and cached in the
module-level ``config`` singleton.

Usage:
    from xp_ledger.config import config

    print(config.ledger.endpoint)
    print(config.reconcile.poll_checks)

Environment Variable Mapping:
    XP_LEDGER_ENDPOINT   -> ledger.endpoint
    XP_LEDGER_API_KEY    -> ledger.api_key
    XP_CONTRACT_ADDRESS  -> ledger.contract_address
    XP_REQUEST_TIMEOUT   -> ledger.request_timeout
    XP_MIN_COOLDOWN      -> ledger.min_cooldown
    XP_DB_PATH           -> database.path
    XP_JOURNAL_PATH      -> journal.path
    XP_WALLETS_PATH      -> wallets.path
    XP_LOG_LEVEL         -> logging.level
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "xp_ledger.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "xp_ledger.example.ini"


def _resolve(path: str) -> Path:
    p = Path(path)
    if p.is_absolute():
        return p
    return PROJECT_ROOT / p


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class LedgerSettings:
    """Ledger node endpoint and program constants."""

    endpoint: str = "http://127.0.0.1:8081"
    api_key: str | None = None
    contract_address: str | None = None
    request_timeout: float = 10.0
    min_cooldown: int = 10
    max_history: int = 32


@dataclass
class ReconcileSettings:
    """Retry, polling and fee policy of the reconciliation engine.

    Fees are in nano (1 coin = 1_000_000_000 nano).
    """

    amount: int = 1
    submit_attempts: int = 3
    submit_backoff_seconds: float = 2.0
    poll_interval_seconds: float = 5.0
    poll_checks: int = 15
    retry_poll_checks: int = 10
    confirmation_delay_seconds: float = 10.0
    cooldown_margin_seconds: float = 1.0
    base_fee: int = 200_000_000
    escalation_fee: int = 100_000_000
    max_amount_per_op: int = 1_000_000


@dataclass
class DatabaseSettings:
    """Audit store location."""

    path: str = "data/xp_ledger.db"

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to database file."""
        return _resolve(self.path)


@dataclass
class JournalSettings:
    """Append-only attempt journal."""

    path: str = "data/journal.jsonl"
    enabled: bool = True

    @property
    def absolute_path(self) -> Path:
        return _resolve(self.path)


@dataclass
class WalletSettings:
    """Wallets file holding owner and user keys."""

    path: str = "data/wallets.json"

    @property
    def absolute_path(self) -> Path:
        return _resolve(self.path)


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"


@dataclass
class XPLedgerConfig:
    """
    Complete configuration.

    Aggregates all settings sections. Access via the module-level ``config``
    singleton.
    """

    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    journal: JournalSettings = field(default_factory=JournalSettings)
    wallets: WalletSettings = field(default_factory=WalletSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_bool(value: str) -> bool:
    """Parse a string value to boolean."""
    return value.lower() in ("true", "yes", "1", "on", "enabled")


# Typed option table: (section, option, parser) per dataclass field.
_INT = "int"
_FLOAT = "float"
_BOOL = "bool"
_STR = "str"

_OPTION_TYPES: dict[str, dict[str, str]] = {
    "ledger": {
        "endpoint": _STR,
        "api_key": _STR,
        "contract_address": _STR,
        "request_timeout": _FLOAT,
        "min_cooldown": _INT,
        "max_history": _INT,
    },
    "reconcile": {
        "amount": _INT,
        "submit_attempts": _INT,
        "submit_backoff_seconds": _FLOAT,
        "poll_interval_seconds": _FLOAT,
        "poll_checks": _INT,
        "retry_poll_checks": _INT,
        "confirmation_delay_seconds": _FLOAT,
        "cooldown_margin_seconds": _FLOAT,
        "base_fee": _INT,
        "escalation_fee": _INT,
        "max_amount_per_op": _INT,
    },
    "database": {"path": _STR},
    "journal": {"path": _STR, "enabled": _BOOL},
    "wallets": {"path": _STR},
}


def _read_option(parser: configparser.ConfigParser, section: str, option: str, kind: str) -> Any:
    if kind == _INT:
        return parser.getint(section, option)
    if kind == _FLOAT:
        return parser.getfloat(section, option)
    if kind == _BOOL:
        return _parse_bool(parser.get(section, option))
    value = parser.get(section, option).strip()
    return value or None


def _load_from_ini(parser: configparser.ConfigParser, cfg: XPLedgerConfig) -> None:
    """Load configuration from a parsed INI file into ``cfg``."""
    for section, options in _OPTION_TYPES.items():
        if not parser.has_section(section):
            continue
        settings = getattr(cfg, section)
        for option, kind in options.items():
            if parser.has_option(section, option):
                setattr(settings, option, _read_option(parser, section, option, kind))

    # Logging section
    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                cfg.logging.format = val  # type: ignore[assignment]


def _apply_env_overrides(cfg: XPLedgerConfig) -> None:
    """Apply environment variable overrides to configuration."""
    if env_endpoint := os.getenv("XP_LEDGER_ENDPOINT"):
        cfg.ledger.endpoint = env_endpoint
    if env_api_key := os.getenv("XP_LEDGER_API_KEY"):
        cfg.ledger.api_key = env_api_key
    if env_contract := os.getenv("XP_CONTRACT_ADDRESS"):
        cfg.ledger.contract_address = env_contract
    if env_timeout := os.getenv("XP_REQUEST_TIMEOUT"):
        cfg.ledger.request_timeout = float(env_timeout)
    if env_cooldown := os.getenv("XP_MIN_COOLDOWN"):
        cfg.ledger.min_cooldown = int(env_cooldown)

    if env_db := os.getenv("XP_DB_PATH"):
        cfg.database.path = env_db
    if env_journal := os.getenv("XP_JOURNAL_PATH"):
        cfg.journal.path = env_journal
    if env_wallets := os.getenv("XP_WALLETS_PATH"):
        cfg.wallets.path = env_wallets

    if env_log := os.getenv("XP_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()


def load_config(config_file: Path | None = None) -> XPLedgerConfig:
    """
    Load configuration from all sources with proper priority.

    Args:
        config_file: Explicit INI file; when omitted the standard
            ``config/xp_ledger.ini`` / example fallback is used.

    Returns:
        XPLedgerConfig: Fully populated configuration object.
    """
    cfg = XPLedgerConfig()

    if config_file is None:
        if CONFIG_FILE.exists():
            config_file = CONFIG_FILE
        elif CONFIG_EXAMPLE.exists():
            # Use example as fallback for development
            config_file = CONFIG_EXAMPLE

    if config_file:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        _load_from_ini(parser, cfg)

    # Environment variables win over any file
    _apply_env_overrides(cfg)

    return cfg


def reload_config(config_file: Path | None = None) -> XPLedgerConfig:
    """
    Reload configuration from disk and environment.

    Updates the module-level ``config`` singleton in place so modules that
    imported it see the new values.
    """
    fresh = load_config(config_file)
    for name in ("ledger", "reconcile", "database", "journal", "wallets", "logging"):
        setattr(config, name, getattr(fresh, name))
    return config


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

config = load_config()


def get_config_status() -> dict[str, Any]:
    """Configuration source information for the ``info`` command."""
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "endpoint": config.ledger.endpoint,
        "contract_address": config.ledger.contract_address,
        "database": str(config.database.absolute_path),
        "journal": str(config.journal.absolute_path) if config.journal.enabled else None,
        "wallets": str(config.wallets.absolute_path),
    }


# =============================================================================
# TEST HELPERS
# =============================================================================


class use_test_database:
    """
    Context manager for using a temporary test database.

    Usage:
        def test_something(tmp_path):
            with use_test_database(tmp_path / "audit.db"):
                init_database()

    Args:
        db_path: Path to the test database file
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.original_path: str | None = None

    def __enter__(self) -> Path:
        """Set up test database path."""
        self.original_path = config.database.path
        config.database.path = str(self.db_path)
        return self.db_path

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original database path."""
        if self.original_path is not None:
            config.database.path = self.original_path
        return None
