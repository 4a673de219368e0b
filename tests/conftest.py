"""Pytest configuration and shared fixtures."""

import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from home_vault import __util__
from home_vault.config import Config, LocalConfig, VaultConfig, ZfsConfig
from home_vault.core.exclusions import ExclusionSet
from home_vault.core.snapshot import MountState, Snapshot
from home_vault.core.transfer import TransferRequest, TransferResult
from home_vault.transaction import TransactionLog


class FakeClock:
    """Settable clock; every call returns the current value."""

    def __init__(self, start=datetime(2024, 6, 1, 12, 0, 0)):
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value += timedelta(**kwargs)


class MirrorTransfer:
    """In-process transfer service with rsync's mirror semantics.

    Unchanged files are hard-linked from ``link_dest``, changed files are
    written to a new inode and renamed into place, destination files absent
    from the source are deleted, as are excluded ones when ``delete_excluded``
    is set. ``dry_run`` only reports. ``fail_with`` makes the next call stop
    after one file and return that exit code.
    """

    def __init__(self):
        self.requests: list[TransferRequest] = []
        self.fail_with: int | None = None

    @staticmethod
    def _same(a: Path, b: Path, checksum: bool) -> bool:
        sa, sb = a.stat(), b.stat()
        if sa.st_size != sb.st_size:
            return False
        if checksum:
            return a.read_bytes() == b.read_bytes()
        return int(sa.st_mtime) == int(sb.st_mtime)

    @staticmethod
    def _delete_extraneous(request, dest, wanted_files, wanted_dirs):
        exclusions = request.exclusions or ExclusionSet()

        def protected(rel, is_dir=False):
            return not request.delete_excluded and exclusions.is_excluded(rel, is_dir=is_dir)

        for root, dirs, files in os.walk(dest, topdown=False):
            rel_root = Path(root).relative_to(dest)
            for name in files:
                rel = (rel_root / name).as_posix()
                if rel not in wanted_files and not protected(rel):
                    (Path(root) / name).unlink()
            for d in dirs:
                rel = (rel_root / d).as_posix()
                if rel not in wanted_dirs and not protected(rel, is_dir=True):
                    shutil.rmtree(Path(root) / d)

    def transfer(self, request: TransferRequest) -> TransferResult:
        self.requests.append(request)
        source = Path(request.source)
        dest = Path(request.destination)
        link_dest = Path(request.link_dest) if request.link_dest else None
        exclusions = request.exclusions or ExclusionSet()
        fail_with, self.fail_with = self.fail_with, None

        if not request.dry_run:
            dest.mkdir(parents=True, exist_ok=True)
        wanted_files = set()
        wanted_dirs = set()
        changed = []
        transferred = 0

        for root, dirs, files in os.walk(source):
            rel_root = Path(root).relative_to(source)
            dirs[:] = sorted(
                d for d in dirs if not exclusions.is_excluded((rel_root / d).as_posix(), is_dir=True)
            )
            for d in dirs:
                wanted_dirs.add((rel_root / d).as_posix())
                if not request.dry_run:
                    (dest / rel_root / d).mkdir(parents=True, exist_ok=True)
            for name in sorted(files):
                rel = (rel_root / name).as_posix()
                if exclusions.is_excluded(rel):
                    continue
                wanted_files.add(rel)
                src_file = source / rel
                target = dest / rel
                if link_dest is not None:
                    previous = link_dest / rel
                    if previous.is_file() and self._same(src_file, previous, request.checksum):
                        if target.exists():
                            target.unlink()
                        os.link(previous, target)
                        continue
                if target.is_file() and self._same(src_file, target, request.checksum):
                    continue
                if request.dry_run:
                    changed.append(rel)
                    transferred += src_file.stat().st_size
                    continue
                tmp = target.with_name(f".{name}.tmp")
                shutil.copy2(src_file, tmp)
                os.replace(tmp, target)
                changed.append(rel)
                transferred += src_file.stat().st_size
                if fail_with is not None:
                    return TransferResult(
                        exit_code=fail_with,
                        files_transferred=len(changed),
                        bytes_transferred=transferred,
                        changed_files=changed,
                        message="simulated failure",
                    )

        if not request.dry_run:
            self._delete_extraneous(request, dest, wanted_files, wanted_dirs)

        if fail_with is not None:
            return TransferResult(exit_code=fail_with, message="simulated failure")
        return TransferResult(
            exit_code=0,
            files_transferred=len(changed),
            bytes_transferred=transferred,
            changed_files=changed,
        )


class FakeSnapshotBackend:
    """In-memory snapshot backend."""

    def __init__(self, clock=None, mounted=True, mountable=True):
        self.clock = clock or __util__.now
        self.snapshots: dict[str, list[Snapshot]] = {}
        self.mounted = mounted
        self.mountable = mountable
        self.mount_calls = 0
        self.sent: list[tuple] = []
        self.fail_destroy: set[str] = set()
        self.fail_send = False

    def create_snapshot(self, dataset, name):
        existing = self.snapshots.setdefault(dataset, [])
        if any(s.name == name for s in existing):
            raise __util__.CommandError(["zfs", "snapshot", f"{dataset}@{name}"], 1, "dataset already exists")
        existing.append(Snapshot(dataset=dataset, name=name, creation=self.clock(), used_bytes=1024))

    def list_snapshots(self, dataset):
        return sorted(self.snapshots.get(dataset, []), key=lambda s: s.creation)

    def destroy_snapshot(self, snapshot):
        if snapshot.name in self.fail_destroy:
            raise __util__.CommandError(["zfs", "destroy", snapshot.full_name], 1, "dataset is busy")
        self.snapshots[snapshot.dataset].remove(snapshot)

    def send_snapshot(self, snapshot, target, base=None):
        if self.fail_send:
            raise __util__.CommandError(["zfs", "send", snapshot.full_name], 1, "broken pipe")
        self.sent.append((snapshot, target, base))

    def query_mount_state(self, dataset):
        return MountState(mounted=self.mounted, mountpoint=f"/{dataset}")

    def mount(self, dataset):
        self.mount_calls += 1
        if not self.mountable:
            raise __util__.CommandError(["zfs", "mount", dataset], 1, "cannot mount")
        self.mounted = True

    def add(self, dataset, name, creation, used_bytes=1024):
        self.snapshots.setdefault(dataset, []).append(
            Snapshot(dataset=dataset, name=name, creation=creation, used_bytes=used_bytes)
        )


class RecordingSink:
    def __init__(self):
        self.messages = []

    def notify(self, title, message, urgency="normal"):
        self.messages.append((title, message, urgency))

    @property
    def titles(self):
        return [m[0] for m in self.messages]


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_toml():
    """Return a sample valid TOML configuration string."""
    return """
[vault]
source = "/home/alice"
log_dir = "/var/log/home-vault"
min_free_percent = 15
checksum = true
notifications = false
exclude = ["Videos/", "*.iso"]

[vault.retention]
days = 30

[local]
path = "/mnt/backup/alice"

[remote]
host = "nas.local"
user = "backup"
path = "/volume1/vault/alice"
port = 2222
bandwidth_limit = 0

[zfs]
enabled = true
dataset = "tank/vault"
snapshot_prefix = "hv"
retention_days = 7
"""


@pytest.fixture
def minimal_config_toml():
    """Return a minimal valid TOML configuration string."""
    return """
[local]
path = "/mnt/backup"
"""


@pytest.fixture
def config_file(tmp_config_dir, sample_config_toml):
    """Create a temporary config file with sample content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(sample_config_toml)
    return config_path


@pytest.fixture
def minimal_config_file(tmp_config_dir, minimal_config_toml):
    """Create a temporary config file with minimal content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(minimal_config_toml)
    return config_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mirror():
    return MirrorTransfer()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def source_tree(tmp_path):
    """A small home directory."""
    source = tmp_path / "home"
    (source / "docs").mkdir(parents=True)
    (source / "docs" / "report.txt").write_text("quarterly numbers\n")
    (source / "notes.md").write_text("# notes\n")
    (source / ".cache" / "thumbs").mkdir(parents=True)
    (source / ".cache" / "thumbs" / "a.png").write_bytes(b"\x89PNG")
    return source


@pytest.fixture
def vault_config(tmp_path, source_tree):
    """Configuration with a local store under tmp_path."""
    return Config(
        vault=VaultConfig(
            source=str(source_tree),
            log_dir=str(tmp_path / "logs"),
            min_free_percent=0,
            notifications=False,
        ),
        local=LocalConfig(path=str(tmp_path / "backup"), preserve_acls_xattrs=False),
    )


@pytest.fixture
def zfs_vault_config(vault_config):
    vault_config.zfs = ZfsConfig(enabled=True, dataset="tank/vault", snapshot_prefix="mhv", retention_days=14)
    return vault_config


@pytest.fixture
def transactions(tmp_path):
    return TransactionLog(tmp_path / "logs" / "transactions.jsonl")


@pytest.fixture
def snapshot_backend(clock):
    return FakeSnapshotBackend(clock=clock)
