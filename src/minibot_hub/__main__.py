"""CLI entry point for minibot-hub."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from minibot_hub.app import MiniBotHubApp
from minibot_hub.config import AppConfig, load_config
from minibot_hub.log import get_logger, setup_logging

logger = get_logger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="minibot-hub",
        description="Multi-tenant Telegram mini-bot runtime",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    start_parser = subparsers.add_parser("start", help="Start every active mini-bot")
    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    broadcast_parser = subparsers.add_parser(
        "broadcast", help="Send a message to every platform user through the main bot"
    )
    broadcast_parser.add_argument("-m", "--message", required=True, help="Message text")
    add_parser = subparsers.add_parser("add-bot", help="Register a mini-bot")
    add_parser.add_argument("--owner", type=int, required=True, help="Owner's Telegram user id")
    add_parser.add_argument("--name", required=True, help="Display name")
    add_parser.add_argument("--username", required=True, help="Bot @username")
    add_parser.add_argument("--token", required=True, help="BotFather token")
    add_parser.add_argument("--flow", help="Path to a custom flow JSON file (makes a custom bot)")
    add_parser.add_argument("--welcome", help="Welcome message override")
    list_parser = subparsers.add_parser("list-bots", help="List registered mini-bots")

    for sub in (start_parser, check_parser, broadcast_parser, add_parser, list_parser):
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load_or_exit(args.config, args.env)
    setup_logging(config.log_level, config.log_json)

    if args.command == "start":
        asyncio.run(_run(config))
    elif args.command == "broadcast":
        asyncio.run(_broadcast(config, args.message))
    elif args.command == "add-bot":
        flow = json.loads(Path(args.flow).read_text(encoding="utf-8")) if args.flow else None
        asyncio.run(_add_bot(config, args.owner, args.name, args.username, args.token, flow, args.welcome))
    elif args.command == "list-bots":
        asyncio.run(_list_bots(config))


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and fill it in", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load_or_exit(config_path, env_path)
    try:
        MiniBotHubApp(config)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Main bot: @{config.main_bot.username or '(not set)'}")
    print(f"  Startup delay: {config.runtime.startup_delay}s, launch wait: {config.runtime.launch_wait}s")
    print(f"  Handler timeout: {config.runtime.handler_timeout}s")
    print(f"  Session TTL: {config.sessions.ttl_seconds}s (sweep every {config.sessions.sweep_interval}s)")
    print(
        f"  Broadcast: progress every {config.broadcast.progress_every}, "
        f"pause {config.broadcast.pause_seconds}s every {config.broadcast.pause_every}"
    )


async def _run(config: AppConfig) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    app = MiniBotHubApp(config)
    reinit_tasks: set[asyncio.Task[int]] = set()

    def _signal_handler() -> None:
        stop_event.set()

    def _reload_handler() -> None:
        logger.info("sighup_received")
        task = loop.create_task(app.reinitialize())
        reinit_tasks.add(task)
        task.add_done_callback(reinit_tasks.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: _signal_handler())
    if hasattr(signal, "SIGHUP"):
        try:
            loop.add_signal_handler(signal.SIGHUP, _reload_handler)
        except NotImplementedError:
            pass

    await app.start()
    try:
        await stop_event.wait()
    finally:
        for task in reinit_tasks:
            task.cancel()
        await app.stop()


async def _broadcast(config: AppConfig, message: str) -> None:
    app = MiniBotHubApp(config)
    await app.db.initialize()
    try:
        result = await app.platform_broadcast(message)
    except Exception as e:
        print(f"Broadcast failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await app.db.close()
    print(result.summary())


async def _add_bot(
    config: AppConfig,
    owner_id: int,
    name: str,
    username: str,
    token: str,
    flow: dict | None,
    welcome: str | None,
) -> None:
    app = MiniBotHubApp(config)
    await app.db.initialize()
    try:
        record = await app.provision_bot(owner_id, name, username, token, flow, welcome)
    except Exception as e:
        print(f"Could not add bot: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await app.db.close()
    print(f"Added bot #{record.id} @{record.bot_username} ({record.bot_type})")


async def _list_bots(config: AppConfig) -> None:
    app = MiniBotHubApp(config)
    await app.db.initialize()
    try:
        records = await app.bots.list_all()
    finally:
        await app.db.close()
    if not records:
        print("No bots registered")
        return
    for record in records:
        state = "active" if record.is_active else "inactive"
        print(f"  #{record.id:<4} @{record.bot_username:<24} {record.bot_type:<7} {state:<9} owner={record.owner_id}")


if __name__ == "__main__":
    main()
