"""Repair Engine.

Re-synchronizes a mirror against the live source with full content
comparison, so files whose data rotted without a size or mtime change are
found and rewritten. No version is created.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .. import __util__
from ..endpoint import Endpoint
from .exclusions import ExclusionSet
from .guard import DestinationGuard
from .transfer import TransferRequest, TransferService

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    """Outcome of a repair pass."""

    target: str
    bytes_reconciled: int = 0
    files_repaired: list[str] = field(default_factory=list)
    exit_code: int = 0
    started_at: float = field(default_factory=time.time)
    completed_at: float = 0.0

    @property
    def healthy(self) -> bool:
        """True when nothing had to be rewritten."""
        return self.bytes_reconciled == 0

    @property
    def duration(self) -> float:
        if self.completed_at:
            return self.completed_at - self.started_at
        return time.time() - self.started_at


class RepairEngine:
    """Checksum-forced reconciliation of a mirror.

    Args:
        transfer: Transfer service
        guard: Checks reachability before anything is compared
        exclusions: Same patterns the mirror was written with
        bandwidth_limit: KB/s, 0 for unlimited
        io_timeout: Transfer I/O timeout in seconds
        preserve_acls_xattrs: Must match how the mirror was written
    """

    def __init__(
        self,
        transfer: TransferService,
        guard: Optional[DestinationGuard] = None,
        exclusions: Optional[ExclusionSet] = None,
        bandwidth_limit: int = 0,
        io_timeout: Optional[int] = None,
        preserve_acls_xattrs: bool = True,
    ) -> None:
        self.transfer = transfer
        self.guard = guard or DestinationGuard()
        self.exclusions = exclusions
        self.bandwidth_limit = bandwidth_limit
        self.io_timeout = io_timeout
        self.preserve_acls_xattrs = preserve_acls_xattrs

    def repair(self, source: Path, target: Endpoint) -> RepairReport:
        """Rewrite every file of ``target`` whose content differs from ``source``.

        Raises:
            RemoteUnreachableError: the target host did not answer
            VaultError: there is no mirror to repair
            TransferFailedError: the reconciliation pass failed
        """
        self.guard.ensure_reachable(target)
        if not target.exists():
            raise __util__.VaultError(f"No mirror found at {target!r}, run a backup first")

        logger.info(__util__.log_heading(f"Repairing {target!r}"))
        report = RepairReport(target=repr(target))
        request = TransferRequest(
            source=Path(source),
            destination=target.transfer_target(),
            exclusions=self.exclusions,
            checksum=True,
            bandwidth_limit=self.bandwidth_limit,
            rsh=target.transfer_shell(),
            preserve_acls_xattrs=self.preserve_acls_xattrs,
            io_timeout=self.io_timeout,
        )
        result = self.transfer.transfer(request)
        report.exit_code = result.exit_code
        report.completed_at = time.time()
        if not result.success:
            raise __util__.TransferFailedError(
                f"Repair transfer failed with exit code {result.exit_code}",
                result.exit_code,
            )

        report.bytes_reconciled = result.bytes_transferred
        report.files_repaired = list(result.changed_files)
        if report.healthy:
            logger.info("Mirror is healthy, no differences found")
        else:
            logger.warning(
                "Repaired %d file(s), %s reconciled",
                len(report.files_repaired),
                __util__.format_size(report.bytes_reconciled),
            )
            for name in report.files_repaired:
                logger.debug("Repaired: %s", name)
        return report
