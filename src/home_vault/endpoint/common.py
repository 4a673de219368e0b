# pyright: standard

"""home-vault: home_vault/endpoint/common.py
Common functionality among destination endpoints.
"""

import math
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class DiskUsage:
    """Filesystem usage of a destination, in bytes."""

    total: int
    used: int
    free: int

    @property
    def used_percent(self) -> int:
        """Used space rounded up, as reported by df(1)."""
        usable = self.used + self.free
        if usable <= 0:
            return 100
        return math.ceil(self.used * 100 / usable)


class Endpoint:
    """Generic structure of a backup destination."""

    def __init__(self, config=None, **kwargs) -> None:
        """
        Initialize the Endpoint with a configuration dictionary.

        Args:
            config (dict): Configuration dictionary containing endpoint settings.
            kwargs: Additional settings overriding ``config``.
        """
        config = config or {}
        self.config = {}
        self.config["path"] = config.get("path")
        self.config["probe_name"] = config.get(
            "probe_name", f".write_test_{os.getpid()}"
        )
        for key, value in kwargs.items():
            self.config[key] = value

    def __repr__(self) -> str:
        return f"{self.config['path']}"

    @property
    def path(self):
        return self.config["path"]

    def probe_write(self) -> bool:
        """Write and remove a zero-byte probe file. True if that worked."""
        raise NotImplementedError

    def transfer_target(self, subpath: str | None = None) -> str:
        """Destination argument for the transfer service."""
        raise NotImplementedError

    def transfer_shell(self) -> str | None:
        """Remote shell for the transfer service, None for local endpoints."""
        return None

    # The following methods may be implemented by endpoints unless the
    # default behaviour is wanted.

    def check_reachable(self) -> None:
        """Raise RemoteUnreachableError if the endpoint cannot be reached."""
        pass

    def makedirs(self) -> bool:
        raise NotImplementedError

    def exists(self, subpath: str | None = None) -> bool:
        raise NotImplementedError

    def is_mountpoint(self) -> bool:
        return False

    def remount_rw(self) -> bool:
        return False

    def disk_usage(self) -> DiskUsage | None:
        return None

    def _join(self, subpath: str | None) -> str:
        base = str(self.config["path"])
        if not subpath:
            return base
        return str(Path(base) / subpath)
