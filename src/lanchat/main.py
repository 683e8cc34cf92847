"""
LanChat - Main entry point for the application.
"""

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Prompt
from rich.text import Text

from . import __version__
from .config import Config
from .constants import (
    APP_NAME,
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)
from .errors import BindConflictError, ConfigError
from .peer import Peer
from .router import DisplayItem, MessageRouter
from .utils import validate_port, validate_username

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(data_dir: Path, level: str, file_logging: bool = True, console_logging: bool = False) -> None:
    """
    Configure the ``lanchat`` logger.

    The textual UI owns the terminal, so console logging is only enabled in
    headless mode.
    """
    root = logging.getLogger("lanchat")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.propagate = False

    if file_logging:
        logs_dir = data_dir / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        root.addHandler(file_handler)

    if console_logging:
        root.addHandler(RichHandler(console=Console(stderr=True), show_path=False))

    if not root.handlers:
        root.addHandler(logging.NullHandler())


def prompt_username() -> str:
    """Ask for a username until a valid one is given."""
    while True:
        username = Prompt.ask("[bold red]Username[/]").strip()
        problem = validate_username(username)
        if problem is None:
            return username
        console.print(f"[red]{problem}[/]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f"{APP_NAME} - Serverless chat for the local network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lanchat                       # Start with the username from config (or prompt)
  lanchat --username alice      # Start as alice
  lanchat --port 9900           # Listen on port 9900 (or the next free one)
  lanchat --headless --debug    # Print events to the terminal, no UI
        """,
    )

    parser.add_argument("--version", action="version", version=f"{APP_NAME} {__version__}")
    parser.add_argument("--username", type=str, default=None, help="Display name (max 20 characters, no spaces)")
    parser.add_argument("--port", type=int, default=None, help="Listen port for sessions (default: 9876)")
    parser.add_argument("--config", type=str, default=None, help="Path to configuration file")
    parser.add_argument("--data-dir", type=str, default=None, help="Data directory for configuration and logs")
    parser.add_argument("--headless", action="store_true", help="Run without the terminal UI, printing events")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


async def run_headless(router: MessageRouter) -> None:
    """Print router events until interrupted."""

    def show(item: DisplayItem) -> None:
        console.print(Text.assemble((f"[{item.kind.value}] ", "dim"), (item.sender_name, "bold yellow"), ": ", item.text))

    def found(peer: Peer) -> None:
        console.print(f"[cyan]+ {peer.username}[/] at {peer.address}:{peer.port}", highlight=False)

    def lost(peer: Peer) -> None:
        console.print(f"[cyan]- {peer.username}[/]", highlight=False)

    router.on_display = show
    router.on_peer_found = found
    router.on_peer_lost = lost

    port = await router.start()
    console.print(f"[bold]{APP_NAME}[/] running as [bold]{router.username}[/] on port {port}. Ctrl+C to quit.")
    try:
        await asyncio.Event().wait()
    finally:
        await router.shutdown()


async def run_ui(router: MessageRouter) -> None:
    """Run the terminal UI on the same loop as the router."""
    from .ui import ChatApp

    await router.start()
    try:
        await ChatApp(router).run_async()
    finally:
        await router.shutdown()


def main(argv: Optional[list] = None) -> int:
    """Main entry point for LanChat."""
    args = build_parser().parse_args(argv)

    data_dir = Path(args.data_dir or DEFAULT_DATA_DIR).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    config_path = Path(args.config).expanduser() if args.config else data_dir / CONFIG_FILENAME

    try:
        config = Config(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        return 1

    level = "DEBUG" if args.debug else config.get("logging", "level", "INFO")
    setup_logging(
        data_dir,
        level,
        file_logging=config.get("logging", "file_logging", True),
        console_logging=args.headless and config.get("logging", "console_logging", True),
    )

    if args.port is not None:
        if not validate_port(args.port):
            console.print(f"[red]Invalid port: {args.port}[/]")
            return 1
        config.set("network", "port", args.port)

    username = args.username or config.get("user", "username", "")
    if username:
        problem = validate_username(username)
        if problem is not None:
            console.print(f"[red]{problem}[/]")
            return 1
    else:
        username = prompt_username()

    router = MessageRouter(username, config=config)
    runner = run_headless if args.headless else run_ui

    try:
        asyncio.run(runner(router))
    except BindConflictError as e:
        logger.error(f"Startup failed: {e}")
        console.print(f"[red]{e.message}[/]")
        return 1
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == "__main__":
    sys.exit(main())
