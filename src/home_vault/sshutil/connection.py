"""SSH command construction with bounded timeouts.

Every remote call made by the engine goes through :class:`SSHConnection` so
that unattended runs never hang on an unreachable host: connection setup is
bounded by ``ConnectTimeout`` and each command by a subprocess timeout.
"""

import getpass
import logging
import shlex
from typing import Optional

from .. import __util__

logger = logging.getLogger(__name__)


class SSHConnection:
    def __init__(
        self,
        hostname: str,
        username: Optional[str] = None,
        port: Optional[int] = None,
        identity_file: Optional[str] = None,
        connect_timeout: int = 10,
        alive_interval: int = 60,
        batch_mode: bool = True,
    ):
        self.hostname = hostname
        self.username = username or getpass.getuser()
        self.port = port
        self.identity_file = identity_file
        self.connect_timeout = connect_timeout
        self.alive_interval = alive_interval
        self.batch_mode = batch_mode

    def __repr__(self) -> str:
        return f"ssh://{self.target}"

    @property
    def target(self) -> str:
        return f"{self.username}@{self.hostname}"

    def ssh_options(self) -> list[str]:
        """Options shared by direct ssh calls and the rsync remote shell."""
        opts = [
            f"ConnectTimeout={self.connect_timeout}",
            f"ServerAliveInterval={self.alive_interval}",
            "ServerAliveCountMax=3",
            "StrictHostKeyChecking=accept-new",
        ]
        if self.batch_mode:
            opts.append("BatchMode=yes")

        cmd = []
        for opt in opts:
            cmd.extend(["-o", opt])
        if self.port:
            cmd.extend(["-p", str(self.port)])
        if self.identity_file:
            cmd.extend(["-i", str(self.identity_file)])
        return cmd

    def base_cmd(self) -> list[str]:
        return ["ssh", *self.ssh_options(), self.target]

    def rsync_shell(self) -> str:
        """Value for ``rsync -e``."""
        return shlex.join(["ssh", *self.ssh_options()])

    def remote_spec(self, path: str) -> str:
        """``user@host:path`` for the transfer service."""
        return f"{self.target}:{path}"

    def command_timeout(self, timeout: Optional[int] = None) -> int:
        # Allow for connection setup on top of the remote command itself
        return (timeout or __util__.DEFAULT_COMMAND_TIMEOUT) + self.connect_timeout

    def run(self, command: list[str], timeout: Optional[int] = None, check=True):
        """Run ``command`` on the remote host and return the CompletedProcess.

        Raises:
            RemoteUnreachableError: ssh itself failed (exit 255) or timed out
            CommandError: the remote command exited non-zero
        """
        full_cmd = [*self.base_cmd(), shlex.join(command)]
        try:
            result = __util__.exec_subprocess(
                full_cmd, timeout=self.command_timeout(timeout), check=False
            )
        except __util__.CommandError as e:
            raise __util__.RemoteUnreachableError(
                f"{self.target} did not respond: {e.stderr.strip()}"
            ) from e

        if result.returncode == 255:
            raise __util__.RemoteUnreachableError(
                f"Cannot connect to {self.target}: {(result.stderr or '').strip()}"
            )
        if check and result.returncode != 0:
            raise __util__.CommandError(full_cmd, result.returncode, result.stderr)
        return result

    def popen(self, command: list[str], **kwargs):
        full_cmd = [*self.base_cmd(), shlex.join(command)]
        return __util__.exec_subprocess(full_cmd, method="Popen", **kwargs)

    def check(self) -> None:
        """Verify the host accepts a non-interactive login."""
        logger.debug("Checking SSH connectivity to %s", self.target)
        self.run(["true"], timeout=self.connect_timeout)
        logger.debug("SSH connection to %s is up", self.target)
