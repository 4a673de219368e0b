"""Backup orchestration: local cycle, remote mirror, repair, restore, prune, status.

:class:`Vault` wires the components together for one configuration. The
order of a local cycle is guard, exclusions, transfer into a new version,
snapshot, retention. Guard and snapshot failures stop the cycle before
anything is deleted or repointed.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .. import __util__
from ..config import Config
from ..endpoint import DiskUsage, Endpoint, LocalEndpoint, remote_endpoint
from ..sshutil import SSHConnection
from ..transaction import TRANSACTION_LOG_NAME, TransactionContext, TransactionLog
from .exclusions import resolve_exclusions
from .guard import DestinationGuard
from .notify import NotificationSink, create_sink
from .repair import RepairEngine, RepairReport
from .restore import RestoreEngine, RestoreReport
from .retention import PruneReport, RetentionSweeper
from .snapshot import (
    MountState,
    ReplicaTarget,
    Snapshot,
    SnapshotBackend,
    SnapshotManager,
    ZfsBackend,
    replica_dataset,
)
from .store import BackupVersion, StoreStatus, VersionStore
from .transfer import RsyncTransfer, TransferRequest, TransferResult, TransferService

logger = logging.getLogger(__name__)

TARGETS = ("local", "remote", "all")
RESTORE_SOURCES = ("local", "remote")

# NAS targets often reject ACLs and extended attributes
REMOTE_ACLS_XATTRS = False


@dataclass
class CycleResult:
    """Outcome of one backup cycle against one destination."""

    target: str
    version: Optional[BackupVersion] = None
    transfer: Optional[TransferResult] = None
    snapshot: Optional[Snapshot] = None
    prune: Optional[PruneReport] = None
    snapshot_prune: Optional[PruneReport] = None
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def duration(self) -> float:
        if self.completed_at:
            return self.completed_at - self.started_at
        return time.time() - self.started_at


@dataclass
class VaultStatus:
    """Everything ``home-vault status`` shows."""

    source: Path
    store: Optional[StoreStatus] = None
    disk_usage: Optional[DiskUsage] = None
    mount_state: Optional[MountState] = None
    snapshot_count: Optional[int] = None
    newest_snapshot: Optional[Snapshot] = None
    recent: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _split_host(spec: str) -> tuple[Optional[str], str]:
    user, sep, host = spec.rpartition("@")
    return (user or None) if sep else None, host


class Vault:
    """Run backup operations for one configuration.

    Args:
        config: Loaded configuration
        transfer: Transfer service, rsync by default
        snapshot_backend: Snapshot backend, ZFS by default
        notifier: Notification sink, chosen from ``vault.notifications``
        transactions: Transaction log, ``<log_dir>/transactions.jsonl`` by default
        clock: Time source shared by the store, snapshots and retention
        attended: A human can answer prompts
        confirm: Prompt callback used in attended mode
    """

    def __init__(
        self,
        config: Config,
        transfer: Optional[TransferService] = None,
        snapshot_backend: Optional[SnapshotBackend] = None,
        notifier: Optional[NotificationSink] = None,
        transactions: Optional[TransactionLog] = None,
        clock: Callable[[], datetime] = __util__.now,
        attended: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.config = config
        self.transfer = transfer or RsyncTransfer()
        self.notifier = notifier or create_sink(config.vault.notifications)
        self.transactions = transactions or TransactionLog(
            config.vault.log_path / TRANSACTION_LOG_NAME
        )
        self.clock = clock
        self.attended = attended
        self.confirm = confirm
        self.exclusions = resolve_exclusions(config)
        self.guard = DestinationGuard(
            min_free_percent=config.vault.min_free_percent,
            attended=attended,
            confirm=confirm,
        )

        self.store: Optional[VersionStore] = None
        if config.local.enabled:
            self.store = VersionStore(
                Path(config.local.path),
                self.transfer,
                clock=clock,
                checksum=config.vault.checksum,
                preserve_acls_xattrs=config.local.preserve_acls_xattrs,
            )

        self.snapshots: Optional[SnapshotManager] = None
        if config.zfs.enabled and config.zfs.dataset:
            self.snapshots = SnapshotManager(
                snapshot_backend or ZfsBackend(),
                config.zfs.dataset,
                prefix=config.zfs.snapshot_prefix,
                clock=clock,
            )

        self.sweeper = RetentionSweeper(self.store, self.snapshots, clock=clock)

    @property
    def source(self) -> Path:
        return self.config.vault.source_path

    def local_endpoint(self) -> LocalEndpoint:
        return LocalEndpoint(config={"path": Path(self.config.local.path)})

    def remote_root(self) -> Endpoint:
        return remote_endpoint(self.config.remote)

    def remote_current(self) -> Endpoint:
        return remote_endpoint(self.config.remote, "current")

    def replica_target(self) -> Optional[ReplicaTarget]:
        zfs = self.config.zfs
        if not (zfs.send and zfs.remote_host and zfs.remote_pool):
            return None
        user, host = _split_host(zfs.remote_host)
        connection = SSHConnection(
            hostname=host,
            username=user,
            connect_timeout=self.config.remote.connect_timeout,
            alive_interval=self.config.remote.alive_interval,
        )
        return ReplicaTarget(connection, replica_dataset(zfs.dataset, zfs.remote_pool))

    def _notify_failure(self, title: str, error: __util__.VaultError) -> None:
        if isinstance(error, __util__.LowSpaceError):
            self.notifier.notify(f"{title} - Low Space", str(error), "critical")
        elif isinstance(error, __util__.InsufficientSpaceError):
            self.notifier.notify(f"{title} - Insufficient Space", str(error), "critical")
        elif isinstance(error, __util__.NotWritableError):
            self.notifier.notify(title, "Backup drive is read-only or disconnected", "critical")
        else:
            self.notifier.notify(title, str(error), "critical")

    def _required_bytes(self) -> int:
        if not self.config.vault.check_required_space:
            return 0
        return __util__.tree_stats(self.source).size_bytes

    def _check_source(self) -> None:
        if not self.source.is_dir():
            raise __util__.VaultError(f"Source missing: {self.source}")

    # Cycles

    def backup_local(self) -> CycleResult:
        """Create a new local version, snapshot it and apply retention."""
        result = CycleResult(target="local")
        if self.store is None:
            result.error = "No local destination configured"
            return result

        logger.info(__util__.log_heading(f"Local backup of {self.source}"))
        with TransactionContext(
            self.transactions, "backup", source=str(self.source), destination=str(self.store.root)
        ) as tx:
            try:
                self._check_source()
                self.store.reconcile_interrupted()
                if self.snapshots is not None:
                    self.snapshots.ensure_mounted()
                self.guard.preflight(self.local_endpoint(), self._required_bytes())

                logger.info("Using %d exclusion patterns", len(self.exclusions))
                try:
                    result.version = self.store.create_version(self.source, self.exclusions)
                finally:
                    result.transfer = self.store.last_result
                tx.set(version=result.version.id, size_bytes=result.version.size_bytes)

                if self.snapshots is not None:
                    result.snapshot = self.snapshots.create_snapshot()
                    tx.set(snapshot=result.snapshot.name)
                    self._replicate(result)

                result.prune = self.sweeper.prune(self.config.vault.retention)
                result.warnings.extend(result.prune.errors)
                if self.snapshots is not None:
                    result.snapshot_prune = self.sweeper.prune_snapshots(self.config.zfs.retention)
                    result.warnings.extend(result.snapshot_prune.errors)
            except __util__.VaultError as e:
                logger.error("Local backup aborted: %s", e)
                result.error = str(e)
                if isinstance(e, __util__.TransferFailedError) and e.version is not None:
                    result.version = e.version
                    tx.set(version=e.version.id)
                tx.fail(str(e))
                self._notify_failure("Backup Failed", e)

        result.completed_at = time.time()
        if result.success:
            self.notifier.notify("Backup Complete", "Local backup completed successfully", "normal")
        return result

    def _replicate(self, result: CycleResult) -> None:
        target = self.replica_target()
        if target is None or result.snapshot is None or self.snapshots is None:
            return
        try:
            self.snapshots.replicate(result.snapshot, target)
        except __util__.ReplicationError as e:
            logger.error("%s", e)
            result.warnings.append(str(e))
            self.notifier.notify("Snapshot Replication Failed", str(e), "critical")

    def mirror_remote(self) -> CycleResult:
        """Mirror the source into ``<remote.path>/current``."""
        result = CycleResult(target="remote")
        remote = self.config.remote
        if not remote.enabled:
            result.error = "No remote destination configured"
            return result

        root = self.remote_root()
        current = self.remote_current()
        logger.info(__util__.log_heading(f"Remote mirror to {root!r}"))
        with TransactionContext(
            self.transactions, "mirror", source=str(self.source), destination=repr(current)
        ) as tx:
            try:
                self._check_source()
                self.guard.preflight(root)
                request = TransferRequest(
                    source=self.source,
                    destination=current.transfer_target(),
                    exclusions=self.exclusions,
                    checksum=self.config.vault.checksum,
                    bandwidth_limit=remote.bandwidth_limit,
                    rsh=current.transfer_shell(),
                    preserve_acls_xattrs=REMOTE_ACLS_XATTRS,
                    io_timeout=remote.io_timeout,
                )
                result.transfer = self.transfer.transfer(request)
                if not result.transfer.success:
                    raise __util__.TransferFailedError(
                        f"Failed with code {result.transfer.exit_code}",
                        result.transfer.exit_code,
                    )
                tx.set(size_bytes=result.transfer.bytes_transferred)
            except __util__.VaultError as e:
                logger.error("Remote mirror aborted: %s", e)
                result.error = str(e)
                tx.fail(str(e))
                self._notify_failure("NAS Backup Failed", e)

        result.completed_at = time.time()
        if result.success:
            self.notifier.notify("NAS Backup Complete", "NAS backup completed successfully", "normal")
        return result

    def run(self, target: str = "all") -> list[CycleResult]:
        """Run the configured cycles; ``all`` runs each enabled destination."""
        if target not in TARGETS:
            raise ValueError(f"Unknown target {target!r}")
        results = []
        if target in ("local", "all") and (target == "local" or self.config.local.enabled):
            results.append(self.backup_local())
        if target in ("remote", "all") and (target == "remote" or self.config.remote.enabled):
            results.append(self.mirror_remote())
        if not results:
            raise __util__.VaultError("No backup destination configured")
        return results

    # Maintenance

    def repair(self) -> RepairReport:
        """Checksum-forced reconciliation of the remote mirror.

        Raises:
            VaultError: no remote configured, host unreachable, mirror
                missing or transfer failure
        """
        remote = self.config.remote
        if not remote.enabled:
            raise __util__.VaultError("Repair needs a configured remote destination")

        engine = RepairEngine(
            self.transfer,
            guard=self.guard,
            exclusions=self.exclusions,
            bandwidth_limit=remote.bandwidth_limit,
            io_timeout=remote.io_timeout,
            preserve_acls_xattrs=REMOTE_ACLS_XATTRS,
        )
        target = self.remote_current()
        with TransactionContext(
            self.transactions, "repair", source=str(self.source), destination=repr(target)
        ) as tx:
            try:
                report = engine.repair(self.source, target)
            except __util__.VaultError:
                self.notifier.notify(
                    "VAULT-FIX Failed", "Repair encountered errors - check logs", "critical"
                )
                raise
            tx.set(size_bytes=report.bytes_reconciled)
            tx.add_detail("healthy", report.healthy)
            tx.add_detail("files_repaired", len(report.files_repaired))

        if report.healthy:
            self.notifier.notify(
                "VAULT-FIX: Backup Healthy", "No corruption found in NAS backup", "normal"
            )
        else:
            self.notifier.notify(
                "VAULT-FIX: Files Repaired",
                f"{len(report.files_repaired)} corrupted file(s) were fixed on NAS",
                "normal",
            )
        return report

    def _restore_version(self, version_id: Optional[str]) -> BackupVersion:
        if self.store is None:
            raise __util__.VaultError("No local destination configured")
        if version_id is None:
            version = self.store.current() or self.store.latest_complete()
            if version is None:
                raise __util__.VaultError(f"No backup at {self.store.root}")
            return version
        version = self.store.get(version_id)
        if version is None:
            raise __util__.VaultError(f"No version {version_id!r} in {self.store.root}")
        if not version.is_complete:
            raise __util__.VaultError(
                f"Version {version_id} is {version.status.value}, only complete versions can be restored"
            )
        return version

    def restore(
        self,
        source: str = "local",
        version_id: Optional[str] = None,
        destination: Optional[Path] = None,
        dry_run: bool = False,
    ) -> RestoreReport:
        """Copy a backup back over ``destination`` (the configured source by default).

        ``local`` restores ``version_id`` or the current version, ``remote``
        restores the NAS mirror, which keeps no versions.

        Raises:
            ValueError: unknown source
            VaultError: nothing to restore, host unreachable, safety copy
                or transfer failure
        """
        if source not in RESTORE_SOURCES:
            raise ValueError(f"Unknown restore source {source!r}")
        destination = Path(destination).expanduser() if destination else self.source
        remote = self.config.remote
        fields = {}

        if source == "local":
            version = self._restore_version(version_id)
            fields["version"] = version.id
            endpoint: Endpoint = LocalEndpoint(config={"path": version.path})
            engine = RestoreEngine(
                self.transfer,
                guard=self.guard,
                exclusions=self.exclusions,
                preserve_acls_xattrs=self.config.local.preserve_acls_xattrs,
                clock=self.clock,
                confirm=self.confirm if self.attended else None,
            )
            title = "Restore"
        else:
            if not remote.enabled:
                raise __util__.VaultError("Restoring from the NAS needs a configured remote destination")
            if version_id is not None:
                raise __util__.VaultError("The NAS mirror keeps no versions, omit the version")
            endpoint = self.remote_current()
            engine = RestoreEngine(
                self.transfer,
                guard=self.guard,
                exclusions=self.exclusions,
                bandwidth_limit=remote.bandwidth_limit,
                io_timeout=remote.io_timeout,
                preserve_acls_xattrs=REMOTE_ACLS_XATTRS,
                clock=self.clock,
                confirm=self.confirm if self.attended else None,
            )
            title = "NAS Restore"

        with TransactionContext(
            self.transactions,
            "restore",
            source=repr(endpoint),
            destination=str(destination),
            **fields,
        ) as tx:
            tx.add_detail("dry_run", dry_run)
            try:
                report = engine.restore(endpoint, destination, dry_run=dry_run)
            except __util__.VaultError as e:
                self.notifier.notify(f"{title} Failed", str(e), "critical")
                raise
            tx.set(size_bytes=report.bytes_restored)
            tx.add_detail("files_restored", len(report.files_restored))
            if report.safety_copy is not None:
                tx.add_detail("safety_copy", str(report.safety_copy))

        if not dry_run:
            self.notifier.notify(
                f"{title} Complete", f"{title} to {destination} completed", "normal"
            )
        return report

    def prune(self, dry_run: bool = False) -> PruneReport:
        """Apply version retention to the local store."""
        if self.store is None:
            raise __util__.VaultError("No local destination configured")
        with TransactionContext(
            self.transactions, "prune", destination=str(self.store.root)
        ) as tx:
            report = self.sweeper.prune(self.config.vault.retention, dry_run=dry_run)
            tx.set(size_bytes=report.bytes_freed)
            tx.add_detail("deleted", report.deleted_count)
            tx.add_detail("dry_run", dry_run)
            if report.errors:
                tx.fail("; ".join(report.errors))
        return report

    def _require_snapshots(self) -> SnapshotManager:
        if self.snapshots is None:
            raise __util__.VaultError("ZFS snapshots are not enabled")
        return self.snapshots

    def create_snapshot(self) -> Snapshot:
        manager = self._require_snapshots()
        with TransactionContext(self.transactions, "snapshot", destination=manager.dataset) as tx:
            snapshot = manager.create_snapshot()
            tx.set(snapshot=snapshot.name)
        target = self.replica_target()
        if target is not None:
            manager.replicate(snapshot, target)
        return snapshot

    def list_snapshots(self) -> list[Snapshot]:
        return self._require_snapshots().list_snapshots()

    def prune_snapshots(self, dry_run: bool = False) -> PruneReport:
        manager = self._require_snapshots()
        with TransactionContext(
            self.transactions, "prune", destination=manager.dataset
        ) as tx:
            report = self.sweeper.prune_snapshots(self.config.zfs.retention, dry_run=dry_run)
            tx.add_detail("snapshots_deleted", report.deleted_count)
            tx.add_detail("dry_run", dry_run)
            if report.errors:
                tx.fail("; ".join(report.errors))
        return report

    def status(self, recent: int = 5) -> VaultStatus:
        """Collect store, disk, snapshot and transaction information."""
        status = VaultStatus(source=self.source)
        if self.store is not None:
            status.store = self.store.status()
            status.disk_usage = self.local_endpoint().disk_usage()
        if self.snapshots is not None:
            try:
                status.mount_state = self.snapshots.backend.query_mount_state(
                    self.snapshots.dataset
                )
                snapshots = self.snapshots.list_snapshots()
                status.snapshot_count = len(snapshots)
                status.newest_snapshot = snapshots[-1] if snapshots else None
            except __util__.VaultError as e:
                logger.warning("Cannot query snapshots: %s", e)
                status.errors.append(str(e))
        status.recent = self.transactions.read(limit=recent)
        return status
