"""
Command-line interface for the XP ledger tools.

Commands:
- init-db: Initialize the audit database schema
- create-wallets: Generate an owner wallet and user wallets
- verify-wallets: Check that every wallet address derives from its key
- node: Serve an in-process sandbox ledger over HTTP
- deploy: Deploy the XP contract with the owner wallet
- add-xp: Credit XP to users through the reconciliation engine
- get-xp / get-history: Read a user's balance or retained history
- upgrade: Replace the contract code and check the version bump
- info: Show configuration, contract state and audit totals

Usage:
    xp-ledger init-db
    xp-ledger create-wallets --users 5
    xp-ledger node --fund 100
    xp-ledger deploy
    xp-ledger add-xp --users 1,2,3 --amount 10
    xp-ledger get-xp 1

Environment Variables:
    XP_LEDGER_ENDPOINT, XP_LEDGER_API_KEY, XP_CONTRACT_ADDRESS, XP_DB_PATH,
    XP_WALLETS_PATH, XP_JOURNAL_PATH, XP_LOG_LEVEL (see xp_ledger.config)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from xp_ledger.chain.address import Address
from xp_ledger.chain.errors import XPLedgerError
from xp_ledger.chain.sandbox import from_nano, to_nano
from xp_ledger.chain.transport import HttpTransport
from xp_ledger.config import config, get_config_status
from xp_ledger.logging_config import configure_logging
from xp_ledger.wallets import (
    WalletsFile,
    WalletsFileError,
    generate_wallets,
    load_wallets,
    save_wallets,
)

T = TypeVar("T")


# =============================================================================
# HELPERS
# =============================================================================


def _parse_ids(text: str | None) -> list[int] | None:
    """Parse ``"1,2,5"`` into ``[1, 2, 5]``; ``None`` or ``"all"`` selects everyone."""
    if text is None or text.strip().lower() == "all":
        return None
    try:
        return [int(part) for part in text.split(",") if part.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid user id list: {text!r}") from exc


def _contract_address(wallets: WalletsFile | None) -> Address:
    text = config.ledger.contract_address
    if text:
        return Address.parse(text)
    if wallets is not None and wallets.contract is not None:
        return wallets.contract
    raise WalletsFileError(
        "no contract address; run 'xp-ledger deploy' or set XP_CONTRACT_ADDRESS"
    )


def _resolve_user(wallets: WalletsFile | None, text: str) -> Address:
    """Accept either a raw address or a user id from the wallets file."""
    if text.isdigit():
        if wallets is None:
            raise WalletsFileError("a user id needs a wallets file")
        users = wallets.select_users([int(text)])
        if not users:
            raise WalletsFileError(f"no user with id {text}")
        return users[0].address
    return Address.parse(text)


def _transport() -> HttpTransport:
    return HttpTransport(
        endpoint=config.ledger.endpoint,
        api_key=config.ledger.api_key,
        timeout=config.ledger.request_timeout,
    )


def _run(
    command: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
) -> T:
    return asyncio.run(command(*args, **kwargs))


def _client(transport: HttpTransport, contract: Address | None, wallets: WalletsFile | None):
    from xp_ledger.client import XPClient

    wallet = wallets.owner.wallet() if wallets is not None else None
    return XPClient(transport, contract, wallet, timeout=config.ledger.request_timeout)


def _load_optional_wallets() -> WalletsFile | None:
    try:
        return load_wallets(config.wallets.absolute_path)
    except WalletsFileError:
        return None


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_init_db(args: argparse.Namespace) -> int:
    """
    Initialize the audit database schema.

    Returns:
        0 on success, 1 on error
    """
    from xp_ledger.db import DatabaseError, init_database

    try:
        init_database()
    except DatabaseError as e:
        print(f"Error initializing database: {e}", file=sys.stderr)
        return 1
    print(f"Database initialized at {config.database.absolute_path}")
    return 0


def cmd_create_wallets(args: argparse.Namespace) -> int:
    """Generate a wallets file, or add users to an existing one."""
    path = config.wallets.absolute_path
    if path.exists() and not args.append:
        print(
            f"Error: {path} already exists. Use --append to add users.",
            file=sys.stderr,
        )
        return 1
    try:
        if args.append and path.exists():
            wallets = load_wallets(path)
            created = wallets.add_users(args.users)
        else:
            wallets = generate_wallets(args.users)
            created = wallets.users
        save_wallets(wallets, path)
    except (WalletsFileError, OSError) as e:
        print(f"Error writing wallets: {e}", file=sys.stderr)
        return 1

    print(f"Owner: {wallets.owner.address}")
    for user in created:
        print(f"User {user.id}: {user.address}")
    print(f"Saved to {path}")
    return 0


def cmd_verify_wallets(args: argparse.Namespace) -> int:
    """Check address/key consistency of every wallet."""
    try:
        wallets = load_wallets(config.wallets.absolute_path)
    except WalletsFileError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    problems = wallets.problems()
    for problem in problems:
        print(f"  - {problem}", file=sys.stderr)
    if problems:
        print(f"{len(problems)} problem(s) found.", file=sys.stderr)
        return 1
    print(f"All {len(wallets.users) + 1} wallets are consistent.")
    return 0


def cmd_node(args: argparse.Namespace) -> int:
    """Serve a sandbox ledger until interrupted."""
    from xp_ledger.chain.contract import ContractParams
    from xp_ledger.chain.node import serve
    from xp_ledger.chain.sandbox import LedgerSandbox

    sandbox = LedgerSandbox(
        latency=args.latency,
        min_fee=to_nano(args.min_fee),
        params=ContractParams(
            min_cooldown=config.ledger.min_cooldown, max_history=config.ledger.max_history
        ),
    )
    if args.fund:
        wallets = _load_optional_wallets()
        if wallets is None:
            print("Warning: no wallets file; nothing funded.", file=sys.stderr)
        else:
            sandbox.fund(wallets.owner.address, to_nano(args.fund))
            print(f"Funded owner {wallets.owner.address} with {args.fund} coins")

    try:
        serve(
            sandbox,
            host=args.host,
            port=args.port,
            api_key=config.ledger.api_key,
            requests_per_second=args.rps,
        )
    except KeyboardInterrupt:
        print("\nNode stopped.")
    return 0


async def _deploy(wallets: WalletsFile, salt: int) -> Address:
    from xp_ledger.chain.contract import DEFAULT_CODE

    async with _transport() as transport:
        client = _client(transport, None, wallets)
        return await client.deploy(DEFAULT_CODE, salt=salt)


def cmd_deploy(args: argparse.Namespace) -> int:
    """Deploy the contract and store its address in the wallets file."""
    try:
        wallets = load_wallets(config.wallets.absolute_path)
        address = _run(_deploy, wallets, args.salt)
    except (WalletsFileError, XPLedgerError) as e:
        print(f"Error deploying contract: {e}", file=sys.stderr)
        return 1

    wallets.contract = address
    save_wallets(wallets, config.wallets.absolute_path)
    print(f"Contract deployed at {address}")
    return 0


async def _add_xp(wallets: WalletsFile, ids: list[int] | None, amount: int):
    from xp_ledger.db import AuditStore
    from xp_ledger.journal import Journal
    from xp_ledger.reconcile import ReconciliationEngine, Target

    users = wallets.select_users(ids)
    targets = [
        Target(address=u.address, amount=amount, label=f"user {u.id}", public_key=u.public_key)
        for u in users
    ]
    journal = Journal(config.journal.absolute_path) if config.journal.enabled else None

    async with _transport() as transport:
        client = _client(transport, _contract_address(wallets), wallets)
        engine = ReconciliationEngine(
            client,
            AuditStore(),
            settings=config.reconcile,
            min_cooldown=config.ledger.min_cooldown,
            journal=journal,
        )
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, engine.stop)
        try:
            return await engine.run(targets)
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)


def cmd_add_xp(args: argparse.Namespace) -> int:
    """Run one reconciliation batch.

    Returns:
        0 if every user was credited, 1 on abort or failures, 130 if stopped.
    """
    from xp_ledger.db import init_database
    from xp_ledger.reconcile import BatchAbortedError

    amount = args.amount if args.amount is not None else config.reconcile.amount
    try:
        wallets = load_wallets(config.wallets.absolute_path)
        init_database()
        report = _run(_add_xp, wallets, args.users, amount)
    except BatchAbortedError as e:
        print(f"Batch aborted before submission: {e.reason}", file=sys.stderr)
        return 1
    except (WalletsFileError, XPLedgerError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for op in report.operations:
        outcome = "ok" if op.succeeded else f"FAILED ({op.error})"
        xp = f" xp={op.after_xp}" if op.after_xp is not None else ""
        print(f"{op.target.name}: {outcome}{xp} attempts={len(op.attempts)}")
    print(f"{report.succeeded} succeeded, {report.failed} failed")

    if report.cancelled:
        print("Batch stopped before completion.", file=sys.stderr)
        return 130
    if report.aborted:
        print(f"Batch aborted: {report.reason}", file=sys.stderr)
        return 1
    return 0 if report.failed == 0 else 1


async def _get_xp(contract: Address, user: Address) -> tuple[int, int]:
    async with _transport() as transport:
        client = _client(transport, contract, None)
        xp = await client.get_xp(user)
        return xp, await client.get_level(xp)


def cmd_get_xp(args: argparse.Namespace) -> int:
    """Print a user's XP and level."""
    wallets = _load_optional_wallets()
    try:
        user = _resolve_user(wallets, args.user)
        xp, level = _run(_get_xp, _contract_address(wallets), user)
    except (WalletsFileError, XPLedgerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"{user}: {xp} XP (level {level})")
    return 0


async def _get_history(contract: Address, user: Address):
    async with _transport() as transport:
        return await _client(transport, contract, None).get_user_history(user)


def cmd_get_history(args: argparse.Namespace) -> int:
    """Print a user's retained operation history."""
    wallets = _load_optional_wallets()
    try:
        user = _resolve_user(wallets, args.user)
        history = _run(_get_history, _contract_address(wallets), user)
    except (WalletsFileError, XPLedgerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not history:
        print(f"No history for {user}")
        return 0
    for op_id, entry in history.items():
        print(f"{entry.timestamp}  +{entry.amount}  {op_id:064x}")
    return 0


async def _contract_info(contract: Address, wallets: WalletsFile | None) -> dict[str, Any]:
    async with _transport() as transport:
        client = _client(transport, contract, wallets)
        info: dict[str, Any] = {
            "owner": await client.get_owner(),
            "version": await client.get_version(),
            "last_op_time": await client.get_last_op_time(),
        }
        if wallets is not None:
            info["owner_balance"] = from_nano(await client.get_wallet_balance())
        return info


def cmd_info(args: argparse.Namespace) -> int:
    """Show configuration, live contract state and audit totals."""
    from xp_ledger.db import DatabaseError
    from xp_ledger.db.transactions_repo import count_by_status

    for key, value in get_config_status().items():
        print(f"{key}: {value}")

    wallets = _load_optional_wallets()
    try:
        for key, value in _run(_contract_info, _contract_address(wallets), wallets).items():
            print(f"{key}: {value}")
    except (WalletsFileError, XPLedgerError) as e:
        print(f"contract: unavailable ({e})")

    if config.database.absolute_path.exists():
        try:
            counts = count_by_status()
        except DatabaseError as e:
            print(f"audit: unavailable ({e})")
        else:
            print("audit: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    return 0


async def _upgrade(wallets: WalletsFile, tag: str) -> tuple[int, int]:
    from xp_ledger.chain.contract import code_cell

    settings = config.reconcile
    async with _transport() as transport:
        client = _client(transport, _contract_address(wallets), wallets)
        before = await client.get_version()
        await client.send_upgrade(code_cell(tag))
        await asyncio.sleep(settings.confirmation_delay_seconds)
        after = await client.get_version()
        for _ in range(settings.poll_checks):
            if after != before:
                break
            await asyncio.sleep(settings.poll_interval_seconds)
            after = await client.get_version()
        return before, after


def cmd_upgrade(args: argparse.Namespace) -> int:
    """Replace the contract code and compare versions."""
    try:
        wallets = load_wallets(config.wallets.absolute_path)
        before, after = _run(_upgrade, wallets, args.tag)
    except (WalletsFileError, XPLedgerError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if after > before:
        print(f"Upgrade confirmed: version {before} -> {after}")
        return 0
    if after == before:
        print(f"Warning: version still {before}; the upgrade may not have landed.")
        return 0
    print(f"Error: version went down ({before} -> {after})", file=sys.stderr)
    return 1


# =============================================================================
# ENTRY POINT
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xp-ledger",
        description="XP ledger tools: sandbox node, deployment and reconciled XP credits",
    )
    parser.add_argument("--log-level", help="Override [logging] level")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Initialize the audit database schema")
    init_parser.set_defaults(func=cmd_init_db)

    wallets_parser = subparsers.add_parser(
        "create-wallets",
        help="Generate owner and user wallets",
        description="Write a new wallets file, or add users to it with --append.",
    )
    wallets_parser.add_argument("--users", type=int, default=3, help="Number of user wallets")
    wallets_parser.add_argument(
        "--append", action="store_true", help="Add users to the existing wallets file"
    )
    wallets_parser.set_defaults(func=cmd_create_wallets)

    verify_parser = subparsers.add_parser(
        "verify-wallets", help="Check wallet addresses against their keys"
    )
    verify_parser.set_defaults(func=cmd_verify_wallets)

    node_parser = subparsers.add_parser(
        "node",
        help="Serve a sandbox ledger over HTTP",
        description="Start an in-memory ledger node speaking the JSON-RPC protocol.",
    )
    node_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    node_parser.add_argument("--port", "-p", type=int, default=8081, help="Bind port")
    node_parser.add_argument(
        "--fund", type=str, default=None, help="Coins credited to the owner wallet at start"
    )
    node_parser.add_argument(
        "--latency", type=float, default=0.0, help="Seconds before a message is applied"
    )
    node_parser.add_argument(
        "--min-fee", type=str, default="0", help="Messages with less value (coins) are dropped"
    )
    node_parser.add_argument(
        "--rps", type=int, default=None, help="Requests per second before answering 429"
    )
    node_parser.set_defaults(func=cmd_node)

    deploy_parser = subparsers.add_parser("deploy", help="Deploy the XP contract")
    deploy_parser.add_argument("--salt", type=int, default=0, help="Address salt")
    deploy_parser.set_defaults(func=cmd_deploy)

    add_parser = subparsers.add_parser(
        "add-xp",
        help="Credit XP to users",
        description="Submit AddXP for each selected user and reconcile every attempt.",
    )
    add_parser.add_argument(
        "--users", type=_parse_ids, default=None, help="Comma-separated user ids (default: all)"
    )
    add_parser.add_argument(
        "--amount", type=int, default=None, help="XP per user (default: [reconcile] amount)"
    )
    add_parser.set_defaults(func=cmd_add_xp)

    get_xp_parser = subparsers.add_parser("get-xp", help="Show a user's XP")
    get_xp_parser.add_argument("user", help="User id from the wallets file, or an address")
    get_xp_parser.set_defaults(func=cmd_get_xp)

    history_parser = subparsers.add_parser("get-history", help="Show a user's history")
    history_parser.add_argument("user", help="User id from the wallets file, or an address")
    history_parser.set_defaults(func=cmd_get_history)

    info_parser = subparsers.add_parser("info", help="Show configuration and contract state")
    info_parser.set_defaults(func=cmd_info)

    upgrade_parser = subparsers.add_parser("upgrade", help="Upgrade the contract code")
    upgrade_parser.add_argument(
        "--tag", default="xp-ledger/2", help="Code tag of the new program cell"
    )
    upgrade_parser.set_defaults(func=cmd_upgrade)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
