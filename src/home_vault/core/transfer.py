"""Transfer service: mirror a source tree into a destination.

The engine only depends on the :class:`TransferService` interface. The
default implementation drives ``rsync``, which provides delta transfer,
hard-link reuse against a previous version (``--link-dest``) and
checksum-forced comparison (``--checksum``).
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Optional, Protocol, cast

from .. import __util__
from .exclusions import ExclusionSet

logger = logging.getLogger(__name__)

# rsync: "Partial transfer due to vanished source files"
RSYNC_VANISHED = 24
RSYNC_SUCCESS_CODES = frozenset({0, RSYNC_VANISHED})

_STATS_PATTERNS = {
    "files_transferred": re.compile(
        r"Number of (?:regular )?files transferred:\s*([\d,]+)"
    ),
    "bytes_transferred": re.compile(r"Total transferred file size:\s*([\d,]+)"),
    "bytes_sent": re.compile(r"Total bytes sent:\s*([\d,]+)"),
    "bytes_received": re.compile(r"Total bytes received:\s*([\d,]+)"),
}
# --out-format="%i %n": "<f.st...... path/to/file" for a transferred file
_ITEMIZE_FILE = re.compile(r"^[<>]f\S{9} (.+)$")


@dataclass
class TransferRequest:
    """Parameters of one transfer.

    Attributes:
        source: Source directory (its contents are transferred) or ``user@host:path``
        destination: Destination directory, ``user@host:path`` for remotes
        exclusions: Patterns to skip; matching destination files are deleted
        link_dest: Previous version to hard-link unchanged files against
        checksum: Compare file contents instead of size and mtime
        bandwidth_limit: KB/s, 0 for unlimited
        rsh: Remote shell command for remote destinations
        delete_excluded: Also delete destination files matching exclusions
        preserve_acls_xattrs: Keep ACLs and extended attributes
        io_timeout: Abort when no data moves for this many seconds
        dry_run: Report what would change without writing anything
    """

    source: Path | str
    destination: str
    exclusions: Optional[ExclusionSet] = None
    link_dest: Optional[Path] = None
    checksum: bool = False
    bandwidth_limit: int = 0
    rsh: Optional[str] = None
    delete_excluded: bool = True
    preserve_acls_xattrs: bool = True
    io_timeout: Optional[int] = None
    dry_run: bool = False


@dataclass
class TransferResult:
    """Outcome of a transfer."""

    exit_code: int
    files_transferred: int = 0
    bytes_transferred: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    changed_files: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code in RSYNC_SUCCESS_CODES


class TransferService(Protocol):
    def transfer(self, request: TransferRequest) -> TransferResult:
        """Mirror ``request.source`` into ``request.destination``."""
        ...


def _with_trailing_slash(path) -> str:
    path = str(path)
    return path if path.endswith("/") else path + "/"


def parse_stats(output: str) -> dict[str, int]:
    """Extract the counters of ``rsync --stats`` output."""
    stats = {}
    for key, pattern in _STATS_PATTERNS.items():
        match = pattern.search(output)
        stats[key] = int(match.group(1).replace(",", "")) if match else 0
    return stats


def parse_changed_files(lines) -> list[str]:
    """Names of regular files rsync transferred, from itemized output."""
    changed = []
    for line in lines:
        match = _ITEMIZE_FILE.match(line.rstrip("\n"))
        if match:
            changed.append(match.group(1))
    return changed


class RsyncTransfer:
    """Transfer service backed by the rsync binary."""

    def __init__(self, rsync_path: str = "rsync") -> None:
        self.rsync_path = rsync_path

    def build_command(
        self, request: TransferRequest, filter_path: Optional[Path] = None
    ) -> list[str]:
        cmd = [self.rsync_path, "-a"]
        if request.preserve_acls_xattrs:
            cmd += ["-A", "-X"]
        cmd += ["--delete"]
        if request.delete_excluded:
            cmd += ["--delete-excluded"]
        if filter_path is not None:
            cmd += [f"--exclude-from={filter_path}"]
        if request.checksum:
            cmd += ["--checksum"]
        if request.link_dest is not None:
            cmd += [f"--link-dest={Path(request.link_dest).resolve()}"]
        if request.bandwidth_limit > 0:
            cmd += [f"--bwlimit={request.bandwidth_limit}"]
        if request.io_timeout:
            cmd += [f"--timeout={request.io_timeout}"]
        if request.rsh:
            cmd += ["-e", request.rsh]
        if request.dry_run:
            cmd += ["--dry-run"]
        cmd += ["--stats", "--out-format=%i %n"]
        cmd += [_with_trailing_slash(request.source)]
        cmd += [_with_trailing_slash(request.destination)]
        return cmd

    def transfer(self, request: TransferRequest) -> TransferResult:
        exclusions = request.exclusions or ExclusionSet()
        with exclusions.filter_file() as filter_path:
            cmd = self.build_command(request, filter_path)
            logger.debug("Transfer command: %s", cmd)
            env = dict(os.environ, LC_ALL="C")
            try:
                proc = __util__.exec_subprocess(
                    cmd,
                    method="Popen",
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    env=env,
                )
            except __util__.CommandError as e:
                logger.error("Cannot start %s: %s", self.rsync_path, e)
                return TransferResult(exit_code=e.returncode, message=str(e))

            lines = []
            for line in cast(IO[str], proc.stdout):
                lines.append(line)
                logger.debug("rsync: %s", line.rstrip())
            exit_code = proc.wait()

        output = "".join(lines)
        result = TransferResult(
            exit_code=exit_code,
            changed_files=parse_changed_files(lines),
            **parse_stats(output),
        )
        if exit_code == RSYNC_VANISHED:
            logger.warning("Some source files vanished during the transfer")
        elif not result.success:
            result.message = "".join(lines[-5:]).strip()
            logger.error("rsync exited with code %d", exit_code)
        return result
