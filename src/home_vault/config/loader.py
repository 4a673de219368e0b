"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import tomllib
from pathlib import Path
from typing import Any

from .schema import (
    Config,
    LocalConfig,
    RemoteConfig,
    RetentionConfig,
    VaultConfig,
    ZfsConfig,
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "home-vault" / "config.toml",
    Path("/etc/home-vault/config.toml"),
]


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path).expanduser()
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _get(data: dict[str, Any], key: str, default: Any, kind: type | tuple) -> Any:
    """Fetch ``key`` from ``data`` and check its type."""
    value = data.get(key, default)
    if value is None:
        return value
    # bool is a subclass of int; don't accept true/false for numbers
    if isinstance(value, bool) and kind is int:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    if not isinstance(value, kind):
        expected = kind.__name__ if isinstance(kind, type) else "/".join(
            k.__name__ for k in kind
        )
        raise ConfigError(f"'{key}' must be of type {expected}, got {value!r}")
    return value


def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    """Fetch the sub-table ``key``, empty when absent."""
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a table, got {value!r}")
    return value


def _parse_retention(data: dict[str, Any], default_days: int = 14) -> RetentionConfig:
    """Parse retention configuration from dict."""
    days = _get(data, "days", default_days, int)
    if days < 0:
        raise ConfigError(f"Retention days must be >= 0, got {days}")
    return RetentionConfig(days=days)


def _parse_vault(data: dict[str, Any]) -> VaultConfig:
    """Parse the [vault] table."""
    retention = RetentionConfig()
    if "retention" in data:
        retention = _parse_retention(_table(data, "retention"))

    exclude = _get(data, "exclude", [], list)
    if not all(isinstance(p, str) for p in exclude):
        raise ConfigError("'exclude' must be a list of strings")

    return VaultConfig(
        source=_get(data, "source", "~", str),
        log_dir=_get(data, "log_dir", "~/.home-vault/logs", str),
        min_free_percent=_get(data, "min_free_percent", 10, int),
        checksum=_get(data, "checksum", False, bool),
        notifications=_get(data, "notifications", True, bool),
        exclude=list(exclude),
        default_excludes=_get(data, "default_excludes", True, bool),
        check_required_space=_get(data, "check_required_space", True, bool),
        retention=retention,
    )


def _parse_local(data: dict[str, Any]) -> LocalConfig:
    """Parse the [local] table."""
    return LocalConfig(
        path=_get(data, "path", "", str),
        preserve_acls_xattrs=_get(data, "preserve_acls_xattrs", True, bool),
    )


def _parse_remote(data: dict[str, Any]) -> RemoteConfig:
    """Parse the [remote] table."""
    remote = RemoteConfig(
        host=_get(data, "host", "", str),
        user=_get(data, "user", "", str),
        path=_get(data, "path", "", str),
        port=_get(data, "port", 22, int),
        identity_file=_get(data, "identity_file", None, str),
        bandwidth_limit=_get(data, "bandwidth_limit", 5000, int),
        connect_timeout=_get(data, "connect_timeout", 10, int),
        alive_interval=_get(data, "alive_interval", 60, int),
        io_timeout=_get(data, "io_timeout", 300, int),
    )
    if remote.bandwidth_limit < 0:
        raise ConfigError("'bandwidth_limit' must be >= 0")
    if remote.connect_timeout <= 0:
        raise ConfigError("'connect_timeout' must be > 0")
    return remote


def _parse_zfs(data: dict[str, Any]) -> ZfsConfig:
    """Parse the [zfs] table."""
    zfs = ZfsConfig(
        enabled=_get(data, "enabled", False, bool),
        dataset=_get(data, "dataset", "", str),
        mountpoint=_get(data, "mountpoint", "", str),
        snapshot_prefix=_get(data, "snapshot_prefix", "mhv", str),
        retention_days=_get(data, "retention_days", 14, int),
        send=_get(data, "send", False, bool),
        remote_host=_get(data, "remote_host", "", str),
        remote_pool=_get(data, "remote_pool", "", str),
    )
    if zfs.retention_days < 0:
        raise ConfigError(
            f"Snapshot retention days must be >= 0, got {zfs.retention_days}"
        )
    if not zfs.snapshot_prefix:
        raise ConfigError("'snapshot_prefix' must not be empty")
    return zfs


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    if not config.local.enabled and not config.remote.enabled:
        warnings.append("No destination configured ([local] path or [remote] host/path)")

    if not 0 <= config.vault.min_free_percent <= 99:
        warnings.append(
            f"min_free_percent={config.vault.min_free_percent} is outside 0..99"
        )

    if config.remote.host and not config.remote.path:
        warnings.append("Remote host configured without a backup path")

    if config.remote.enabled and not config.remote.user:
        warnings.append("Remote has no user; the local user name will be used")

    if config.zfs.enabled and not config.zfs.dataset:
        warnings.append("ZFS enabled but no dataset configured")

    if config.zfs.send and not (config.zfs.remote_host and config.zfs.remote_pool):
        warnings.append("ZFS send enabled without remote_host and remote_pool")

    if config.vault.retention.days == 0:
        warnings.append("Version retention disabled (days = 0)")

    return warnings


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    config = Config(
        vault=_parse_vault(_table(data, "vault")),
        local=_parse_local(_table(data, "local")),
        remote=_parse_remote(_table(data, "remote")),
        zfs=_parse_zfs(_table(data, "zfs")),
        path=path,
    )

    # Validate and collect warnings
    warnings = _validate_config(config)

    return config, warnings


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# home-vault configuration

[vault]
source = "~"
log_dir = "~/.home-vault/logs"
min_free_percent = 10       # Refuse to run when the destination is fuller
checksum = false            # Compare contents instead of size/mtime (slow)
notifications = true
default_excludes = true     # Skip caches, trash, build artifacts, ...
exclude = [
    # "Videos/",
]

[vault.retention]
days = 14                   # Delete versions older than 14 days (0 = keep all)

[local]
path = "/mnt/backup/HomeVault/me"

# Remote mirror over SSH, also the target of `home-vault repair`
# [remote]
# host = "nas.local"
# user = "backup"
# path = "/volume1/HomeVault/me"
# bandwidth_limit = 5000    # KB/s, 0 = unlimited
# connect_timeout = 10
# alive_interval = 60

# ZFS snapshots of the dataset holding [local] path
# [zfs]
# enabled = true
# dataset = "tank/mhv_me"
# snapshot_prefix = "mhv"
# retention_days = 14
# send = false
# remote_host = "root@backup-host"
# remote_pool = "backup"
"""
