"""Backup engine for home-vault.

Version store, snapshot layer, retention, repair, restore and the orchestrator that
runs them in order.
"""

from .operations import CycleResult, Vault, VaultStatus
from .retention import PruneReport, RetentionSweeper
from .repair import RepairEngine, RepairReport
from .restore import RestoreEngine, RestoreReport
from .snapshot import Snapshot, SnapshotManager, ZfsBackend
from .store import BackupVersion, VersionStatus, VersionStore

__all__ = [
    "Vault",
    "CycleResult",
    "VaultStatus",
    "VersionStore",
    "BackupVersion",
    "VersionStatus",
    "SnapshotManager",
    "ZfsBackend",
    "Snapshot",
    "RetentionSweeper",
    "PruneReport",
    "RepairEngine",
    "RepairReport",
    "RestoreEngine",
    "RestoreReport",
]
