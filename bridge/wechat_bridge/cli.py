"""CLI entry point for the bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

from .auth import PairingStore
from .bridge import BridgeOrchestrator
from .clients.account import AccountClient
from .config import (
    DEFAULT_CONFIG_PATH,
    client_config,
    ensure_config,
    load_config,
    save_auth_key,
)
from .errors import BridgeError, BridgeStartupError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        description="WeChat ⇄ agent gateway bridge",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Config file path",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )

    sub = parser.add_subparsers(dest="command")

    # start (default)
    sub.add_parser("start", help="Start the bridge")

    # status
    sub.add_parser("status", help="Show account service login status")

    # pairing
    pairing_p = sub.add_parser("pairing", help="Manage paired senders")
    pairing_sub = pairing_p.add_subparsers(dest="pairing_command")

    pairing_sub.add_parser("list", help="List paired senders")

    code_p = pairing_sub.add_parser("code", help="Show the pairing code")
    code_p.add_argument(
        "--rotate",
        action="store_true",
        help="Replace the pairing code with a new one",
    )

    approve_p = pairing_sub.add_parser("approve", help="Pair a sender directly")
    approve_p.add_argument("sender_id", help="Account user id to allow")
    approve_p.add_argument("--label", default="", help="Display name")

    return parser


# ---- subcommand handlers ----


async def _ensure_auth_key(config: dict[str, Any], config_path: str) -> None:
    """Mint and persist an account auth key if the config has none."""
    account_cfg = config.setdefault("account", {})
    if account_cfg.get("auth_key"):
        return
    if not account_cfg.get("admin_key"):
        raise BridgeError("account.auth_key is not set and no admin_key is available to generate one")

    logger.warning("No account auth key configured, generating one")
    client = AccountClient(client_config(config, "account"))
    try:
        auth_key = await client.generate_auth_key()
    finally:
        await client.disconnect()
    save_auth_key(config_path, auth_key)
    account_cfg["auth_key"] = auth_key


async def _run_bridge(config: dict[str, Any], config_path: str) -> int:
    try:
        await _ensure_auth_key(config, config_path)
    except BridgeError as exc:
        logger.error("Cannot start: %s", exc)
        return 1

    bridge = BridgeOrchestrator(config)
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.ensure_future(bridge.shutdown()),
        )

    def _on_unhandled(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        logger.error("Unhandled error: %s", context.get("exception") or context.get("message"))

    loop.set_exception_handler(_on_unhandled)

    try:
        await bridge.start()
    except BridgeStartupError as exc:
        logger.error("Bridge failed to start: %s", exc)
        return 1

    logger.info("Pairing code for new users: %s", bridge.store.pairing_code)
    await bridge.wait_stopped()
    return 0


def _cmd_start(args: argparse.Namespace) -> int:
    """Start the bridge (default command)."""
    config_path = ensure_config(args.config)
    config = load_config(config_path)
    return asyncio.run(_run_bridge(config, config_path))


def _cmd_status(args: argparse.Namespace) -> int:
    config = load_config(args.config)

    async def _run() -> dict[str, Any]:
        client = AccountClient(client_config(config, "account"))
        try:
            await client.check_login_status()
            return client.status()
        finally:
            await client.disconnect()

    try:
        status = asyncio.run(_run())
    except BridgeError as exc:
        print(f"Account service unreachable: {exc}", file=sys.stderr)
        return 1
    print(f"  login_state={status['login_state']}  has_auth_key={status['has_auth_key']}")
    return 0


def _cmd_pairing(args: argparse.Namespace) -> int:
    """Handle pairing subcommands."""
    config = load_config(args.config)
    store = PairingStore(config.get("auth", {}))

    if args.pairing_command == "list":
        for rec in store.get_all_allowed():
            print(
                f"  {rec.sender_id}"
                f"  label={rec.label!r}"
                f"  approved_at={rec.approved_at.isoformat()}"
            )
    elif args.pairing_command == "code":
        if args.rotate:
            try:
                code = store.rotate_code()
            except BridgeError as exc:
                print(f"Cannot rotate: {exc}", file=sys.stderr)
                return 1
        else:
            code = store.pairing_code
        print(code)
    elif args.pairing_command == "approve":
        if store.add_allowed(args.sender_id, args.label):
            print(f"Approved: {args.sender_id}")
        else:
            print(f"Already approved: {args.sender_id}")
    else:
        print(
            "Usage: wechat-bridge pairing {list|code|approve}",
            file=sys.stderr,
        )
        return 1
    return 0


# ---- main ----


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    command = args.command or "start"

    if command == "start":
        code = _cmd_start(args)
    elif command == "status":
        code = _cmd_status(args)
    elif command == "pairing":
        code = _cmd_pairing(args)
    else:
        parser.print_help()
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
