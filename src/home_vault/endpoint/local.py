# pyright: standard

"""home-vault: home_vault/endpoint/local.py
Destination on a locally mounted filesystem.
"""

import os
import shutil
from pathlib import Path

from home_vault import __util__
from home_vault.__logger__ import logger

from .common import DiskUsage, Endpoint


class LocalEndpoint(Endpoint):
    """Create a local destination endpoint."""

    def __init__(self, config=None, **kwargs) -> None:
        super().__init__(config=config, **kwargs)
        self.config["path"] = Path(self.config["path"]).expanduser()

    def transfer_target(self, subpath=None):
        return self._join(subpath)

    def makedirs(self) -> bool:
        try:
            self.config["path"].mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Cannot create destination directory %s: %s", self.path, e)
            return False
        return True

    def exists(self, subpath=None) -> bool:
        return Path(self._join(subpath)).exists()

    def probe_write(self) -> bool:
        probe = self.config["path"] / self.config["probe_name"]
        try:
            probe.touch()
        except OSError as e:
            logger.debug("Write probe %s failed: %s", probe, e)
            return False
        try:
            probe.unlink()
        except OSError as e:
            logger.warning("Could not remove write probe %s: %s", probe, e)
        return True

    def is_mountpoint(self) -> bool:
        return os.path.ismount(self.config["path"])

    def remount_rw(self) -> bool:
        cmd = ["mount", "-o", "remount,rw", str(self.config["path"])]
        if os.geteuid() != 0:
            cmd = ["sudo", "-n"] + cmd
        try:
            __util__.exec_subprocess(cmd)
        except __util__.CommandError as e:
            logger.error("Failed to remount %s read-write: %s", self.path, e)
            return False
        return True

    def disk_usage(self) -> DiskUsage | None:
        # Walk up to the nearest existing directory, like df on a new path
        path = self.config["path"]
        while not path.exists() and path != path.parent:
            path = path.parent
        try:
            usage = shutil.disk_usage(path)
        except OSError as e:
            logger.warning("Could not determine disk space for %s: %s", path, e)
            return None
        return DiskUsage(total=usage.total, used=usage.used, free=usage.free)
