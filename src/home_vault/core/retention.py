"""Retention Sweeper.

Deletes complete versions and managed snapshots older than their retention
window. Each deletion is attempted independently; failures are collected in
the report instead of stopping the sweep. Failed versions are never selected.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from .. import __util__
from ..config import RetentionConfig
from .snapshot import Snapshot, SnapshotManager
from .store import BackupVersion, VersionStatus, VersionStore

logger = logging.getLogger(__name__)


@dataclass
class PruneReport:
    """Result of a retention sweep.

    ``bytes_freed`` counts only data no surviving version still links to.
    """

    deleted_count: int = 0
    bytes_freed: int = 0
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


# (dev, ino) -> [size, st_nlink, links seen]
InodeUsage = dict[tuple[int, int], list[int]]


def inode_usage(path: Path) -> InodeUsage:
    """Map every inode below ``path`` to its size and link counts."""
    usage: InodeUsage = {}
    for root, _dirs, files in os.walk(path, followlinks=False):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            key = (st.st_dev, st.st_ino)
            if key in usage:
                usage[key][2] += 1
            else:
                usage[key] = [st.st_size, st.st_nlink, 1]
    return usage


def reclaimable_bytes(usages: list[InodeUsage]) -> int:
    """Bytes released by deleting every tree in ``usages`` together."""
    merged: InodeUsage = {}
    for usage in usages:
        for key, (size, nlink, seen) in usage.items():
            if key in merged:
                merged[key][2] += seen
            else:
                merged[key] = [size, nlink, seen]
    return sum(size for size, nlink, seen in merged.values() if seen >= nlink)


class RetentionSweeper:
    """Prune versions of a store and snapshots of a manager by age."""

    def __init__(
        self,
        store: Optional[VersionStore] = None,
        snapshots: Optional[SnapshotManager] = None,
        clock: Callable[[], datetime] = __util__.now,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.clock = clock

    def cutoff(self, policy: RetentionConfig) -> datetime:
        return self.clock() - timedelta(days=policy.days)

    def expired_versions(self, policy: RetentionConfig) -> list[BackupVersion]:
        if self.store is None or not policy.enabled:
            return []
        cutoff = self.cutoff(policy)
        return [
            v for v in self.store.list_versions(VersionStatus.COMPLETE) if v.created < cutoff
        ]

    def expired_snapshots(self, policy: RetentionConfig) -> list[Snapshot]:
        if self.snapshots is None or not policy.enabled:
            return []
        cutoff = self.cutoff(policy)
        return [s for s in self.snapshots.list_snapshots() if s.creation < cutoff]

    def prune(self, policy: RetentionConfig, dry_run: bool = False) -> PruneReport:
        """Delete versions older than ``policy.days``.

        A dry run selects and measures exactly what a real run would delete.
        """
        report = PruneReport(dry_run=dry_run)
        if not policy.enabled:
            logger.info("Version retention disabled (days = 0), nothing pruned")
            return report
        if self.store is None:
            return report

        expired = self.expired_versions(policy)
        logger.info(
            "%d version(s) older than %d days in %s", len(expired), policy.days, self.store.root
        )
        usages = {v.id: inode_usage(v.path) for v in expired}

        removed = []
        for version in expired:
            if dry_run:
                logger.info("Would delete version %s", version.id)
                removed.append(version)
                continue
            try:
                self.store.delete_version(version)
            except OSError as e:
                logger.error("Failed to delete version %s: %s", version.id, e)
                report.errors.append(f"{version.id}: {e}")
                continue
            removed.append(version)

        report.deleted = sorted(v.id for v in removed)
        report.deleted_count = len(removed)
        report.bytes_freed = reclaimable_bytes([usages[v.id] for v in removed])

        if not dry_run:
            try:
                self.store.heal_current()
            except OSError as e:
                logger.error("Failed to repair the current pointer: %s", e)
                report.errors.append(f"current: {e}")

        logger.info(
            "%s %d version(s), %s",
            "Would delete" if dry_run else "Deleted",
            report.deleted_count,
            __util__.format_size(report.bytes_freed),
        )
        return report

    def prune_snapshots(self, policy: RetentionConfig, dry_run: bool = False) -> PruneReport:
        """Destroy managed snapshots older than ``policy.days``."""
        report = PruneReport(dry_run=dry_run)
        if not policy.enabled:
            logger.info("Snapshot retention disabled (days = 0), nothing pruned")
            return report
        if self.snapshots is None:
            return report

        try:
            expired = self.expired_snapshots(policy)
        except __util__.VaultError as e:
            logger.error("Cannot list snapshots: %s", e)
            report.errors.append(str(e))
            return report

        removed = []
        for snapshot in expired:
            if dry_run:
                logger.info("Would destroy snapshot %s", snapshot.full_name)
                removed.append(snapshot)
                continue
            try:
                self.snapshots.destroy(snapshot)
            except __util__.VaultError as e:
                logger.error("Failed to destroy snapshot %s: %s", snapshot.full_name, e)
                report.errors.append(f"{snapshot.name}: {e}")
                continue
            removed.append(snapshot)

        report.deleted = sorted(s.name for s in removed)
        report.deleted_count = len(removed)
        report.bytes_freed = sum(s.used_bytes for s in removed)
        logger.info(
            "%s %d snapshot(s) older than %d days",
            "Would destroy" if dry_run else "Destroyed",
            report.deleted_count,
            policy.days,
        )
        return report
