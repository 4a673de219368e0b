"""Restore Engine.

Copies a backup (a local version or the remote mirror) back over a home
directory. A non-empty destination is first copied aside so that an
unwanted restore can be undone. Paths matching the exclusions are neither
restored nor deleted in the destination.
"""

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .. import __util__
from ..endpoint import Endpoint
from .exclusions import ExclusionSet
from .guard import DestinationGuard
from .transfer import TransferRequest, TransferService

logger = logging.getLogger(__name__)

SAFETY_COPY_TIME_FORMAT = "%Y%m%d_%H%M%S"
SSH_DIR_MODE = 0o700
SSH_FILE_MODE = 0o600


@dataclass
class RestoreReport:
    """Outcome of a restore."""

    source: str
    destination: Path
    dry_run: bool = False
    safety_copy: Optional[Path] = None
    files_restored: list[str] = field(default_factory=list)
    bytes_restored: int = 0
    exit_code: int = 0
    started_at: float = field(default_factory=time.time)
    completed_at: float = 0.0

    @property
    def duration(self) -> float:
        if self.completed_at:
            return self.completed_at - self.started_at
        return time.time() - self.started_at


def safety_copy_path(destination: Path, when: datetime) -> Path:
    """``/home/alice`` -> ``/home/alice_backup_before_restore_20240601_120000``"""
    stamp = when.strftime(SAFETY_COPY_TIME_FORMAT)
    return destination.with_name(f"{destination.name}_backup_before_restore_{stamp}")


def fix_permissions(destination: Path) -> None:
    """Hand restored files back to the owner of ``destination`` and lock down ``.ssh``.

    Ownership is only changed when running as root. Failures are logged,
    the restored data is already in place.
    """
    if os.geteuid() == 0:
        st = destination.stat()
        for root, dirs, files in os.walk(destination):
            for name in dirs + files:
                path = os.path.join(root, name)
                try:
                    os.chown(path, st.st_uid, st.st_gid, follow_symlinks=False)
                except OSError as e:
                    logger.warning("Cannot change owner of %s: %s", path, e)

    ssh_dir = destination / ".ssh"
    if not ssh_dir.is_dir() or ssh_dir.is_symlink():
        return
    try:
        ssh_dir.chmod(SSH_DIR_MODE)
        for entry in ssh_dir.iterdir():
            if entry.is_file() and not entry.is_symlink():
                entry.chmod(SSH_FILE_MODE)
    except OSError as e:
        logger.warning("Cannot tighten permissions of %s: %s", ssh_dir, e)


class RestoreEngine:
    """Make a directory match a backup.

    Args:
        transfer: Transfer service
        guard: Checks reachability of the backup before anything is copied
        exclusions: Patterns left untouched in the destination
        bandwidth_limit: KB/s, 0 for unlimited
        io_timeout: Transfer I/O timeout in seconds
        preserve_acls_xattrs: Must match how the backup was written
        clock: Time source for the safety copy name
        confirm: Asked whether to go on when the safety copy fails;
            without it such a failure aborts the restore
    """

    def __init__(
        self,
        transfer: TransferService,
        guard: Optional[DestinationGuard] = None,
        exclusions: Optional[ExclusionSet] = None,
        bandwidth_limit: int = 0,
        io_timeout: Optional[int] = None,
        preserve_acls_xattrs: bool = True,
        clock: Callable[[], datetime] = __util__.now,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.transfer = transfer
        self.guard = guard or DestinationGuard()
        self.exclusions = exclusions
        self.bandwidth_limit = bandwidth_limit
        self.io_timeout = io_timeout
        self.preserve_acls_xattrs = preserve_acls_xattrs
        self.clock = clock
        self.confirm = confirm

    def make_safety_copy(self, destination: Path) -> Optional[Path]:
        """Copy a non-empty ``destination`` aside. Returns the copy, if any."""
        if not destination.is_dir() or not any(destination.iterdir()):
            return None
        target = safety_copy_path(destination, self.clock())
        logger.info("Copying %s to %s before restoring", destination, target)
        try:
            shutil.copytree(destination, target, symlinks=True)
        except OSError as e:
            logger.error("Safety copy failed: %s", e)
            if self.confirm is not None and self.confirm("Safety copy failed. Continue anyway?"):
                logger.warning("Restoring without a safety copy")
                return None
            raise __util__.VaultError(f"Safety copy of {destination} failed: {e}") from e
        return target

    def restore(self, source: Endpoint, destination: Path, dry_run: bool = False) -> RestoreReport:
        """Make ``destination`` match ``source``.

        Raises:
            RemoteUnreachableError: the backup host did not answer
            VaultError: there is no backup at ``source``, or the safety
                copy failed
            TransferFailedError: the restore transfer failed
        """
        destination = Path(destination).expanduser()
        self.guard.ensure_reachable(source)
        if not source.exists():
            raise __util__.VaultError(f"No backup found at {source!r}")

        logger.info(__util__.log_heading(f"Restoring {source!r} to {destination}"))
        report = RestoreReport(source=repr(source), destination=destination, dry_run=dry_run)
        if not dry_run:
            report.safety_copy = self.make_safety_copy(destination)

        request = TransferRequest(
            source=source.transfer_target(),
            destination=str(destination),
            exclusions=self.exclusions,
            bandwidth_limit=self.bandwidth_limit,
            rsh=source.transfer_shell(),
            delete_excluded=False,
            preserve_acls_xattrs=self.preserve_acls_xattrs,
            io_timeout=self.io_timeout,
            dry_run=dry_run,
        )
        result = self.transfer.transfer(request)
        report.exit_code = result.exit_code
        report.completed_at = time.time()
        if not result.success:
            raise __util__.TransferFailedError(
                f"Restore transfer failed with exit code {result.exit_code}",
                result.exit_code,
            )

        report.bytes_restored = result.bytes_transferred
        report.files_restored = list(result.changed_files)
        if dry_run:
            logger.info("Dry run: %d file(s) would be restored", len(report.files_restored))
            return report

        fix_permissions(destination)
        logger.info(
            "Restored %d file(s), %s",
            len(report.files_restored),
            __util__.format_size(report.bytes_restored),
        )
        return report
