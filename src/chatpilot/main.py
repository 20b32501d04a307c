"""
main.py — ChatPilot Entry Point

Usage:
    python -m chatpilot                          # Telegram bot
    python -m chatpilot --interface cli          # local console channel
    python -m chatpilot --log-level DEBUG
    python -m chatpilot --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import sys

from dotenv import load_dotenv

from chatpilot import __version__


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatpilot",
        description="Stream an OpenAI assistant into chat channels, one agent per channel.",
    )
    parser.add_argument("--interface", choices=["telegram", "cli"], default="telegram",
                        help="chat transport to run (default: telegram)")
    parser.add_argument("--config", default=None,
                        help="config.yaml path (default: $CHATPILOT_CONFIG, then config/config.yaml)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        default=None, help="override logging.level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _fail(message: str) -> None:
    print(message, file=sys.stderr)
    sys.exit(1)


def bootstrap(args: argparse.Namespace):
    """
    Settings + logging for the chosen interface. Returns (settings, log).

    Exits with status 1 and a readable report when config.yaml does not
    parse or validate_all() finds problems; logging is not set up yet at
    that point, so the report goes to stderr.
    """
    from pydantic import ValidationError

    from chatpilot.config.settings import ConfigError, load_settings
    from chatpilot.observability.logger import get_logger, setup_logging

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        lines = [
            f"  • {'.'.join(str(part) for part in err['loc']) or '?'}: {err['msg']}"
            for err in exc.errors()
        ]
        _fail("\n❌  Invalid configuration:\n\n" + "\n".join(lines) + "\n")
    except OSError as exc:
        _fail(f"\n❌  Could not read configuration: {type(exc).__name__}: {exc}\n")

    try:
        settings.validate_all(args.interface)
    except ConfigError as exc:
        _fail(str(exc))

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        # the console REPL owns stdout
        console_output=settings.logging.console_output and args.interface != "cli",
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings, get_logger("chatpilot.main")


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings, log = bootstrap(args)

    from chatpilot.agent.manager import AgentManager

    manager = AgentManager(settings)
    log.info(
        "chatpilot.starting",
        version=__version__,
        interface=args.interface,
        model=settings.assistant.model,
        idle_timeout_s=settings.agent.idle_timeout_seconds,
    )

    try:
        if args.interface == "cli":
            from chatpilot.interfaces.cli import run_cli
            await run_cli(settings, manager)
        else:
            from chatpilot.interfaces.telegram import run_telegram
            await run_telegram(settings, manager)
    finally:
        await manager.shutdown()
        log.info("chatpilot.stopped", **manager.health())

    return 0
