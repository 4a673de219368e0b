# pyright: standard

"""home-vault: home_vault/__logger__.py
A common logger for console output through rich, plus an optional log file.
"""

import logging
import logging.handlers
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Initialize basic console and handler
cons = Console(stderr=True)
rich_handler = RichHandler(console=cons, show_path=False)
# Create a logger directly
logger = logging.Logger("home-vault", logging.INFO)

LOG_FILE_NAME = "home-vault.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def create_file_handler(log_dir: Path | str) -> logging.Handler:
    """Create a rotating file handler inside ``log_dir``."""
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return handler


def create_logger(live_layout, level="INFO", log_dir=None) -> None:
    """Helper function to setup logging depending on display options."""
    # pylint: disable=global-statement
    global cons, rich_handler

    if live_layout:
        cons = Console(stderr=True, width=150)
        rich_handler = RichHandler(console=cons, show_time=False, show_path=False)
    else:
        cons = Console(stderr=True)
        rich_handler = RichHandler(console=cons, show_path=False)

    handlers: list[logging.Handler] = [rich_handler]
    if log_dir is not None:
        try:
            handlers.append(create_file_handler(log_dir))
        except OSError as e:
            # Console logging still works; the file is a convenience
            cons.print(f"Cannot open log file in {log_dir}: {e}")

    logger.handlers.clear()
    logger.propagate = False
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)

    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=level,
        handlers=handlers,
        force=True,
    )
