"""Shared CLI utilities and argument parsers."""

import argparse
import contextlib
import logging
import sys
from pathlib import Path
from typing import Iterator, Optional

from filelock import FileLock, Timeout

from .. import __util__
from ..__logger__ import create_logger
from ..config import Config, ConfigError, find_config_file, load_config

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "home-vault.lock"


def create_global_parser() -> argparse.ArgumentParser:
    """Create a parser with global options that can be used as a parent."""
    parser = argparse.ArgumentParser(add_help=False)
    add_verbosity_args(parser)
    return parser


def add_verbosity_args(parser: argparse.ArgumentParser) -> None:
    """Add verbosity-related arguments to a parser."""
    group = parser.add_argument_group("Output options")
    group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )
    group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )


def add_unattended_args(parser: argparse.ArgumentParser) -> None:
    """Add the flag selecting non-interactive execution."""
    parser.add_argument(
        "--unattended",
        "--cron",
        dest="unattended",
        action="store_true",
        help="Never prompt; abort on any condition that would need confirmation",
    )


def add_dry_run_arg(parser: argparse.ArgumentParser, help_text: str) -> None:
    parser.add_argument("--dry-run", action="store_true", help=help_text)


def get_log_level(args: argparse.Namespace) -> str:
    """Determine log level from parsed arguments.

    Args:
        args: Parsed command line arguments

    Returns:
        Log level string (DEBUG, INFO, WARNING, ERROR)
    """
    if getattr(args, "debug", False):
        return "DEBUG"
    elif getattr(args, "quiet", False):
        return "WARNING"
    elif getattr(args, "verbose", False):
        return "DEBUG"
    else:
        return "INFO"


def is_attended(args: argparse.Namespace) -> bool:
    """A human can answer prompts: not ``--unattended`` and stdin is a TTY."""
    if getattr(args, "unattended", False):
        return False
    return sys.stdin is not None and sys.stdin.isatty()


def confirm(prompt: str) -> bool:
    """Ask a yes/no question; anything but yes means no."""
    try:
        answer = input(f"{prompt} (yes/no): ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def load_cli_config(args: argparse.Namespace) -> Optional[Config]:
    """Find, load and report on the configuration.

    Returns None (after logging why) when there is no usable configuration.
    """
    try:
        config_path = find_config_file(getattr(args, "config", None))
        if config_path is None:
            print("No configuration file found.")
            print("Create one with: home-vault config init")
            return None

        logger.info("Loading configuration from: %s", config_path)
        config, warnings = load_config(config_path)

        for warning in warnings:
            logger.warning("Config: %s", warning)

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return None
    return config


def setup_logging(args: argparse.Namespace, config: Optional[Config] = None) -> None:
    """Console logging, plus the rotating log file once a config is known."""
    log_dir = config.vault.log_path if config is not None else None
    create_logger(False, level=get_log_level(args), log_dir=log_dir)


@contextlib.contextmanager
def run_lock(config: Config) -> Iterator[Path]:
    """Hold ``<log_dir>/home-vault.lock`` for the duration of a command.

    Raises:
        AbortError: another run holds the lock
    """
    lock_path = config.vault.log_path / LOCK_FILE_NAME
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_path), timeout=0)
    try:
        lock.acquire()
    except Timeout as e:
        raise __util__.AbortError(
            f"Another home-vault run is active (lock held: {lock_path})"
        ) from e
    try:
        yield lock_path
    finally:
        lock.release()
