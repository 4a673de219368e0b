# pyright: standard

"""home-vault: home_vault/endpoint/ssh.py
Destination on a remote host reached over SSH.
"""

from home_vault import __util__
from home_vault.__logger__ import logger
from home_vault.sshutil import SSHConnection

from .common import DiskUsage, Endpoint


def parse_df_output(output: str) -> DiskUsage | None:
    """Parse ``df -Pk`` output into a DiskUsage."""
    lines = [line for line in output.splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    fields = lines[-1].split()
    if len(fields) < 4:
        return None
    try:
        total, used, free = (int(v) * 1024 for v in fields[1:4])
    except ValueError:
        return None
    return DiskUsage(total=total, used=used, free=free)


class SSHEndpoint(Endpoint):
    """Destination directory on a remote host."""

    def __init__(self, config=None, **kwargs) -> None:
        super().__init__(config=config, **kwargs)
        config = config or {}
        self.config["hostname"] = config.get("hostname", "")
        self.connection = SSHConnection(
            hostname=self.config["hostname"],
            username=config.get("username") or None,
            port=config.get("port"),
            identity_file=config.get("identity_file"),
            connect_timeout=config.get("connect_timeout", 10),
            alive_interval=config.get("alive_interval", 60),
        )

    def __repr__(self) -> str:
        return f"{self.connection.target}:{self.config['path']}"

    def transfer_target(self, subpath=None):
        return self.connection.remote_spec(self._join(subpath))

    def transfer_shell(self):
        return self.connection.rsync_shell()

    def check_reachable(self) -> None:
        self.connection.check()

    def _run_ok(self, command: list[str]) -> bool:
        try:
            result = self.connection.run(command, check=False)
        except __util__.RemoteUnreachableError as e:
            logger.error("%s", e)
            return False
        return result.returncode == 0

    def makedirs(self) -> bool:
        ok = self._run_ok(["mkdir", "-p", str(self.config["path"])])
        if not ok:
            logger.error("Cannot create remote directory %r", self)
        return ok

    def exists(self, subpath=None) -> bool:
        return self._run_ok(["test", "-e", self._join(subpath)])

    def probe_write(self) -> bool:
        probe = self._join(self.config["probe_name"])
        if not self._run_ok(["touch", probe]):
            return False
        if not self._run_ok(["rm", "-f", probe]):
            logger.warning("Could not remove remote write probe %s", probe)
        return True

    def is_mountpoint(self) -> bool:
        return self._run_ok(["mountpoint", "-q", str(self.config["path"])])

    def remount_rw(self) -> bool:
        return self._run_ok(["mount", "-o", "remount,rw", str(self.config["path"])])

    def disk_usage(self) -> DiskUsage | None:
        try:
            result = self.connection.run(["df", "-Pk", str(self.config["path"])])
        except __util__.VaultError as e:
            logger.warning("Could not determine remote disk space: %s", e)
            return None
        return parse_df_output(result.stdout)
