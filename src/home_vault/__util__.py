# pyright: standard

"""home-vault: home_vault/__util__.py
Common utility code shared among the modules.
"""

import logging
import os
import shlex
import stat
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

VERSION_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"
DEFAULT_COMMAND_TIMEOUT = 30


class VaultError(Exception):
    """Base class of every error raised by the backup engine."""


class AbortError(VaultError):
    """Exception where the current operation should be aborted."""


class CommandError(VaultError):
    """An external command exited unsuccessfully or timed out."""

    def __init__(self, cmd, returncode: int, stderr: str = "") -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr or ""
        super().__init__(
            f"Command {shlex.join(self.cmd)!r} exited {returncode}: {self.stderr.strip()}"
        )


class NotWritableError(VaultError):
    """The destination cannot be created or written to."""


class InsufficientSpaceError(VaultError):
    """The destination has less free space than the operation requires."""


class LowSpaceError(VaultError):
    """The destination is above its used-space threshold."""


class TransferFailedError(VaultError):
    """The transfer service reported a failure."""

    def __init__(self, message: str, exit_code: int, version=None) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.version = version


class MountFailedError(VaultError):
    """A dataset is not mounted and mounting it failed."""


class NameExhaustedError(VaultError):
    """No unique snapshot name could be found."""


class RemoteUnreachableError(VaultError):
    """A remote host did not answer within the timeout."""


class ReplicationError(VaultError):
    """Sending a snapshot to its replica failed."""


def exec_subprocess(
    command, method="run", timeout=DEFAULT_COMMAND_TIMEOUT, check=True, **kwargs
):
    """Run ``command`` and return the CompletedProcess (or Popen object).

    ``method="run"`` captures text output and raises CommandError on a
    non-zero exit (when ``check``) or on timeout.
    """
    logger.debug("Executing: %s", command)
    if method == "Popen":
        try:
            return subprocess.Popen(command, **kwargs)
        except OSError as e:
            raise CommandError(command, 127, str(e)) from e

    kwargs.setdefault("capture_output", True)
    kwargs.setdefault("text", True)
    try:
        result = subprocess.run(command, timeout=timeout, check=False, **kwargs)
    except subprocess.TimeoutExpired as e:
        raise CommandError(command, 124, f"timed out after {timeout}s") from e
    except OSError as e:
        raise CommandError(command, 127, str(e)) from e

    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stderr or "")
    return result


def log_heading(caption: str) -> str:
    """Formatted heading for logging output sections."""
    return f"{f'--[ {caption} ]':-<50}"


def format_size(size_bytes) -> str:
    """Format a byte count in binary units."""
    if size_bytes is None:
        return "unknown"
    size = float(size_bytes)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if abs(size) < 1024 or unit == "TiB":
            if unit == "B":
                return f"{int(size)} B"
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TiB"


def date_to_str(timestamp: datetime, fmt: str = VERSION_TIME_FORMAT) -> str:
    return timestamp.strftime(fmt)


def str_to_date(value: str, fmt: str = VERSION_TIME_FORMAT) -> datetime:
    return datetime.strptime(value, fmt)


def is_version_name(name: str) -> bool:
    """True if ``name`` looks like a version directory name."""
    try:
        str_to_date(name)
    except ValueError:
        return False
    return True


@dataclass
class TreeStats:
    """Apparent size and regular file count of a directory tree."""

    size_bytes: int = 0
    file_count: int = 0


def tree_stats(path: Path) -> TreeStats:
    """Walk ``path`` without following symlinks, counting each inode once."""
    stats = TreeStats()
    seen = set()
    for root, dirs, files in os.walk(path, followlinks=False):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            key = (st.st_dev, st.st_ino)
            if key in seen:
                continue
            seen.add(key)
            stats.size_bytes += st.st_size
            if stat.S_ISREG(st.st_mode):
                stats.file_count += 1
    return stats


def now() -> datetime:
    return datetime.now()
