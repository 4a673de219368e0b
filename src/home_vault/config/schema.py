"""Configuration schema definitions using dataclasses.

Defines the structure for TOML configuration with sensible defaults.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class RetentionConfig:
    """Retention policy configuration.

    Attributes:
        days: Delete versions older than this many days (0 disables pruning)
    """

    days: int = 14

    @property
    def enabled(self) -> bool:
        return self.days > 0


@dataclass
class VaultConfig:
    """General settings.

    Attributes:
        source: Directory tree to protect
        log_dir: Directory for log files, the transaction log and the run lock
        min_free_percent: Used-space threshold for destinations
        checksum: Compare file contents instead of size/mtime when linking
        notifications: Send desktop notifications after each cycle
        exclude: Extra exclusion patterns
        default_excludes: Include the built-in cache/temporary patterns
        check_required_space: Require free space for the full source size
        retention: Version retention policy
    """

    source: str = "~"
    log_dir: str = "~/.home-vault/logs"
    min_free_percent: int = 10
    checksum: bool = False
    notifications: bool = True
    exclude: list[str] = field(default_factory=list)
    default_excludes: bool = True
    check_required_space: bool = True
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    @property
    def source_path(self) -> Path:
        return Path(self.source).expanduser()

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir).expanduser()


@dataclass
class LocalConfig:
    """Local version store.

    Attributes:
        path: Destination root holding ``incremental/`` and ``current``
        preserve_acls_xattrs: Ask the transfer service to keep ACLs and xattrs
    """

    path: str = ""
    preserve_acls_xattrs: bool = True

    @property
    def enabled(self) -> bool:
        return bool(self.path)


@dataclass
class RemoteConfig:
    """Remote (NAS) mirror reached over SSH.

    Attributes:
        host: Host name or address
        user: Login user
        path: Backup root on the remote; the mirror lives in ``<path>/current``
        port: SSH port
        identity_file: SSH private key
        bandwidth_limit: Transfer limit in KB/s (0 = unlimited)
        connect_timeout: SSH connect timeout in seconds
        alive_interval: SSH ServerAliveInterval in seconds
        io_timeout: Transfer I/O timeout in seconds
    """

    host: str = ""
    user: str = ""
    path: str = ""
    port: int = 22
    identity_file: Optional[str] = None
    bandwidth_limit: int = 5000
    connect_timeout: int = 10
    alive_interval: int = 60
    io_timeout: int = 300

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.path)

    @property
    def current_path(self) -> str:
        return self.path.rstrip("/") + "/current"


@dataclass
class ZfsConfig:
    """ZFS snapshot layer.

    Attributes:
        enabled: Take a snapshot of ``dataset`` after each local version
        dataset: Dataset backing the local version store
        mountpoint: Expected mountpoint (informational)
        snapshot_prefix: Fixed prefix of snapshot names
        retention_days: Snapshot retention (0 disables pruning)
        send: Replicate each new snapshot to ``remote_host``
        remote_host: Replication host (``[user@]host``)
        remote_pool: Pool on the replication host replacing the local pool
    """

    enabled: bool = False
    dataset: str = ""
    mountpoint: str = ""
    snapshot_prefix: str = "mhv"
    retention_days: int = 14
    send: bool = False
    remote_host: str = ""
    remote_pool: str = ""

    @property
    def retention(self) -> RetentionConfig:
        return RetentionConfig(days=self.retention_days)


@dataclass
class Config:
    """Root configuration object."""

    vault: VaultConfig = field(default_factory=VaultConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    zfs: ZfsConfig = field(default_factory=ZfsConfig)
    path: Optional[Path] = None
