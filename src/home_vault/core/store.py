"""Version Store: local backup versions and the current pointer.

Layout below the destination root::

    incremental/<YYYY-MM-DD_HH-MM-SS>/          version file tree
    incremental/<YYYY-MM-DD_HH-MM-SS>.meta.json version metadata
    current -> incremental/<id>                 newest complete version

The pointer is a relative symlink swapped with ``os.replace`` so readers see
either the old or the new target, never a missing or half-written link.
"""

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .. import __util__
from .exclusions import ExclusionSet
from .transfer import TransferRequest, TransferResult, TransferService

logger = logging.getLogger(__name__)

INCREMENTAL_DIR = "incremental"
CURRENT_NAME = "current"
META_SUFFIX = ".meta.json"


class VersionStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class BackupVersion:
    """One point-in-time copy of the source tree."""

    id: str
    path: Path
    parent_id: Optional[str] = None
    status: VersionStatus = VersionStatus.PENDING
    size_bytes: Optional[int] = None
    file_count: Optional[int] = None
    exit_code: Optional[int] = None

    @property
    def created(self) -> datetime:
        return __util__.str_to_date(self.id)

    @property
    def meta_path(self) -> Path:
        return self.path.with_name(self.id + META_SUFFIX)

    @property
    def is_complete(self) -> bool:
        return self.status == VersionStatus.COMPLETE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "status": self.status.value,
            "size_bytes": self.size_bytes,
            "file_count": self.file_count,
            "exit_code": self.exit_code,
        }


@dataclass
class StoreStatus:
    """Summary of a version store."""

    root: Path
    current: Optional[BackupVersion] = None
    counts: dict[str, int] = field(default_factory=dict)
    oldest: Optional[BackupVersion] = None
    newest: Optional[BackupVersion] = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class VersionStore:
    """Create, index and point at backup versions under ``root``.

    Args:
        root: Destination root directory
        transfer: Service that materializes a version
        clock: Returns the current time; version ids derive from it
        checksum: Default for checksum-verified linking
        preserve_acls_xattrs: Passed on to the transfer service
    """

    def __init__(
        self,
        root: Path,
        transfer: TransferService,
        clock: Callable[[], datetime] = __util__.now,
        checksum: bool = False,
        preserve_acls_xattrs: bool = True,
    ) -> None:
        self.root = Path(root).expanduser()
        self.transfer = transfer
        self.clock = clock
        self.checksum = checksum
        self.preserve_acls_xattrs = preserve_acls_xattrs
        self.last_result: Optional[TransferResult] = None

    def __repr__(self) -> str:
        return f"VersionStore({str(self.root)!r})"

    @property
    def incremental_path(self) -> Path:
        return self.root / INCREMENTAL_DIR

    @property
    def current_path(self) -> Path:
        return self.root / CURRENT_NAME

    # Metadata

    def _write_meta(self, version: BackupVersion) -> None:
        tmp = version.meta_path.with_name(f".{version.meta_path.name}.{os.getpid()}")
        tmp.write_text(json.dumps(version.to_dict(), indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, version.meta_path)

    def _load(self, version_id: str) -> BackupVersion:
        path = self.incremental_path / version_id
        version = BackupVersion(id=version_id, path=path)
        meta_path = version.meta_path
        if not meta_path.exists():
            # Directories without metadata were written by older releases,
            # which only kept versions whose transfer succeeded
            version.status = VersionStatus.COMPLETE
            return version
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            version.status = VersionStatus(data.get("status", "complete"))
        except (OSError, ValueError) as e:
            logger.warning("Unreadable metadata for version %s: %s", version_id, e)
            version.status = VersionStatus.FAILED
            return version
        version.parent_id = data.get("parent_id")
        version.size_bytes = data.get("size_bytes")
        version.file_count = data.get("file_count")
        version.exit_code = data.get("exit_code")
        return version

    # Index

    def list_versions(self, status: Optional[VersionStatus] = None) -> list[BackupVersion]:
        """All versions, oldest first."""
        if not self.incremental_path.is_dir():
            return []
        versions = []
        for entry in sorted(self.incremental_path.iterdir()):
            if entry.is_symlink() or not entry.is_dir():
                continue
            if not __util__.is_version_name(entry.name):
                continue
            version = self._load(entry.name)
            if status is None or version.status == status:
                versions.append(version)
        return versions

    def get(self, version_id: str) -> Optional[BackupVersion]:
        if not __util__.is_version_name(version_id):
            return None
        if not (self.incremental_path / version_id).is_dir():
            return None
        return self._load(version_id)

    def latest_complete(self) -> Optional[BackupVersion]:
        complete = self.list_versions(VersionStatus.COMPLETE)
        return complete[-1] if complete else None

    # Current pointer

    def current(self) -> Optional[BackupVersion]:
        """The version the pointer names, None if absent or dangling."""
        if not self.current_path.is_symlink():
            return None
        target = Path(os.readlink(self.current_path))
        version = self.get(target.name)
        if version is None or not version.is_complete:
            return None
        return version

    def set_current(self, version: BackupVersion) -> None:
        """Atomically repoint ``current`` at a complete version."""
        if not version.is_complete:
            raise ValueError(f"Refusing to point current at {version.status.value} version {version.id}")
        tmp = self.root / f".{CURRENT_NAME}.tmp-{os.getpid()}"
        if tmp.is_symlink() or tmp.exists():
            tmp.unlink()
        os.symlink(Path(INCREMENTAL_DIR) / version.id, tmp)
        os.replace(tmp, self.current_path)
        logger.debug("Current pointer now at %s", version.id)

    def clear_current(self) -> None:
        if self.current_path.is_symlink():
            self.current_path.unlink()
            logger.info("Removed current pointer, no complete version left")

    def heal_current(self) -> Optional[BackupVersion]:
        """Repoint a dangling pointer at the newest complete version.

        The pointer is removed when no complete version remains.
        """
        current = self.current()
        if current is not None:
            return current
        newest = self.latest_complete()
        if newest is None:
            self.clear_current()
            return None
        if self.current_path.is_symlink():
            logger.warning("Current pointer is dangling, repointing to %s", newest.id)
        self.set_current(newest)
        return newest

    # Lifecycle

    def _allocate(self) -> BackupVersion:
        timestamp = self.clock().replace(microsecond=0)
        while True:
            version_id = __util__.date_to_str(timestamp)
            path = self.incremental_path / version_id
            candidate = BackupVersion(id=version_id, path=path)
            if not path.exists() and not candidate.meta_path.exists():
                return candidate
            timestamp += timedelta(seconds=1)

    def create_version(
        self,
        source: Path,
        exclusions: Optional[ExclusionSet] = None,
        link_against: Optional[BackupVersion] = None,
        checksum: Optional[bool] = None,
    ) -> BackupVersion:
        """Materialize a new version of ``source``.

        Unchanged files are hard-linked against ``link_against`` (by default
        the current version). The pointer moves only after the version is
        complete.

        Raises:
            TransferFailedError: the version is left on disk as failed
        """
        if link_against is None:
            link_against = self.current()
        if checksum is None:
            checksum = self.checksum

        self.incremental_path.mkdir(parents=True, exist_ok=True)
        version = self._allocate()
        version.parent_id = link_against.id if link_against else None
        self._write_meta(version)
        version.path.mkdir()

        if link_against is not None:
            logger.info("Creating version %s linked against %s", version.id, link_against.id)
        else:
            logger.info("Creating first version %s", version.id)

        request = TransferRequest(
            source=Path(source),
            destination=str(version.path),
            exclusions=exclusions,
            link_dest=link_against.path if link_against else None,
            checksum=checksum,
            preserve_acls_xattrs=self.preserve_acls_xattrs,
        )
        result = self.transfer.transfer(request)
        self.last_result = result
        version.exit_code = result.exit_code

        if not result.success:
            version.status = VersionStatus.FAILED
            self._write_meta(version)
            logger.error(
                "Transfer for version %s failed with exit code %d, keeping it for inspection",
                version.id,
                result.exit_code,
            )
            raise __util__.TransferFailedError(
                f"Transfer failed with exit code {result.exit_code}: {result.message}".rstrip(": "),
                result.exit_code,
                version,
            )

        stats = __util__.tree_stats(version.path)
        version.size_bytes = stats.size_bytes
        version.file_count = stats.file_count
        version.status = VersionStatus.COMPLETE
        self._write_meta(version)
        self.set_current(version)
        logger.info(
            "Version %s complete: %d files, %s",
            version.id,
            version.file_count,
            __util__.format_size(version.size_bytes),
        )
        return version

    def mark_failed(self, version: BackupVersion) -> None:
        version.status = VersionStatus.FAILED
        self._write_meta(version)

    def reconcile_interrupted(self) -> list[BackupVersion]:
        """Mark versions left pending by a crashed run as failed."""
        interrupted = self.list_versions(VersionStatus.PENDING)
        for version in interrupted:
            logger.warning("Version %s was interrupted, marking it failed", version.id)
            self.mark_failed(version)
        return interrupted

    def delete_version(self, version: BackupVersion) -> None:
        """Remove a version tree and its metadata.

        Raises:
            OSError
        """
        shutil.rmtree(version.path)
        version.meta_path.unlink(missing_ok=True)
        logger.info("Deleted version %s", version.id)

    def status(self) -> StoreStatus:
        versions = self.list_versions()
        counts = {s.value: 0 for s in VersionStatus}
        for version in versions:
            counts[version.status.value] += 1
        complete = [v for v in versions if v.is_complete]
        return StoreStatus(
            root=self.root,
            current=self.current(),
            counts=counts,
            oldest=complete[0] if complete else None,
            newest=complete[-1] if complete else None,
        )
