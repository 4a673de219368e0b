"""Snapshot Manager and the ZFS snapshot backend.

The manager owns naming, mount verification and replication policy; the
backend only wraps the ``zfs`` commands. Names are ``<prefix>_<stamp>_<pid>``
and are checked against the dataset's existing snapshots before creation, so
two runs in the same second never produce the same name.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from .. import __util__
from ..sshutil import SSHConnection

logger = logging.getLogger(__name__)

SNAPSHOT_TIME_FORMAT = "%Y%m%d_%H%M%S"
MAX_NAME_ATTEMPTS = 5
RETRY_DELAY = 0.1


@dataclass(frozen=True)
class Snapshot:
    """A snapshot as reported by the backend.

    ``creation`` is the backend's own timestamp, not the requester's clock.
    """

    dataset: str
    name: str
    creation: datetime
    used_bytes: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"


@dataclass
class MountState:
    mounted: bool
    mountpoint: str = ""


@dataclass
class ReplicaTarget:
    """Where snapshots are received: a dataset on an SSH-reachable host."""

    connection: SSHConnection
    dataset: str

    def __str__(self) -> str:
        return f"{self.connection.target}:{self.dataset}"


class SnapshotBackend(Protocol):
    def create_snapshot(self, dataset: str, name: str) -> None: ...

    def list_snapshots(self, dataset: str) -> list[Snapshot]:
        """Snapshots of ``dataset`` ordered by creation time."""
        ...

    def destroy_snapshot(self, snapshot: Snapshot) -> None: ...

    def send_snapshot(
        self, snapshot: Snapshot, target: ReplicaTarget, base: Optional[Snapshot] = None
    ) -> None: ...

    def query_mount_state(self, dataset: str) -> MountState: ...

    def mount(self, dataset: str) -> None: ...


def replica_dataset(dataset: str, remote_pool: str) -> str:
    """Replace the pool component of ``dataset``, keeping the hierarchy."""
    _, sep, rest = dataset.partition("/")
    return f"{remote_pool}{sep}{rest}"


class ZfsBackend:
    """Snapshot backend driving the ``zfs`` command line tool.

    Args:
        timeout: Seconds allowed for each non-streaming command
    """

    def __init__(self, timeout: int = __util__.DEFAULT_COMMAND_TIMEOUT) -> None:
        self.timeout = timeout

    def _run(self, command: list[str]) -> str:
        return __util__.exec_subprocess(command, timeout=self.timeout).stdout

    def create_snapshot(self, dataset: str, name: str) -> None:
        self._run(["zfs", "snapshot", f"{dataset}@{name}"])

    def list_snapshots(self, dataset: str) -> list[Snapshot]:
        output = self._run(
            [
                "zfs", "list", "-H", "-p",
                "-o", "name,creation,used",
                "-t", "snapshot",
                "-s", "creation",
                "-d", "1",
                dataset,
            ]
        )
        snapshots = []
        for line in output.splitlines():
            fields = line.split("\t")
            if len(fields) < 3 or "@" not in fields[0]:
                continue
            ds, _, name = fields[0].partition("@")
            try:
                creation = datetime.fromtimestamp(int(fields[1]))
                used = int(fields[2])
            except ValueError:
                logger.debug("Skipping unparsable zfs list line: %r", line)
                continue
            snapshots.append(Snapshot(dataset=ds, name=name, creation=creation, used_bytes=used))
        return snapshots

    def destroy_snapshot(self, snapshot: Snapshot) -> None:
        self._run(["zfs", "destroy", snapshot.full_name])

    def query_mount_state(self, dataset: str) -> MountState:
        output = self._run(["zfs", "get", "-H", "-o", "value", "mounted,mountpoint", dataset])
        values = output.splitlines()
        mounted = bool(values) and values[0].strip() == "yes"
        mountpoint = values[1].strip() if len(values) > 1 else ""
        return MountState(mounted=mounted, mountpoint=mountpoint)

    def mount(self, dataset: str) -> None:
        self._run(["zfs", "mount", dataset])

    def send_snapshot(
        self, snapshot: Snapshot, target: ReplicaTarget, base: Optional[Snapshot] = None
    ) -> None:
        """``zfs send [-i base] snap | ssh host zfs receive -F dataset``."""
        parent = target.dataset.rpartition("/")[0]
        if parent:
            target.connection.run(["zfs", "create", "-p", parent], check=False)

        send_cmd = ["zfs", "send"]
        if base is not None:
            send_cmd += ["-i", base.full_name]
        send_cmd.append(snapshot.full_name)
        recv_cmd = ["zfs", "receive", "-F", target.dataset]
        logger.debug("Replicating: %s | %s", send_cmd, recv_cmd)

        send_proc = __util__.exec_subprocess(send_cmd, method="Popen", stdout=subprocess.PIPE)
        try:
            recv_proc = target.connection.popen(
                recv_cmd, stdin=send_proc.stdout, stderr=subprocess.PIPE
            )
        except __util__.CommandError:
            send_proc.kill()
            send_proc.wait()
            raise
        # Let zfs send get SIGPIPE if the receiver dies
        if send_proc.stdout is not None:
            send_proc.stdout.close()

        _, recv_err = recv_proc.communicate()
        send_rc = send_proc.wait()
        if send_rc != 0 or recv_proc.returncode != 0:
            raise __util__.CommandError(
                send_cmd + ["|"] + recv_cmd,
                max(send_rc, recv_proc.returncode),
                (recv_err or b"").decode(errors="replace"),
            )


class SnapshotManager:
    """Create, list, replicate and destroy snapshots of one dataset.

    Args:
        backend: Snapshot backend
        dataset: Dataset backing the version store
        prefix: Fixed name prefix; only snapshots carrying it are managed
        clock: Time source for names
        pid_source: Disambiguator source for names
        sleep: Called between naming attempts
        max_attempts: Naming attempts before giving up
    """

    def __init__(
        self,
        backend: SnapshotBackend,
        dataset: str,
        prefix: str = "mhv",
        clock: Callable[[], datetime] = __util__.now,
        pid_source: Callable[[], int] = os.getpid,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = MAX_NAME_ATTEMPTS,
    ) -> None:
        self.backend = backend
        self.dataset = dataset
        self.prefix = prefix
        self.clock = clock
        self.pid_source = pid_source
        self.sleep = sleep
        self.max_attempts = max_attempts

    def __repr__(self) -> str:
        return f"SnapshotManager({self.dataset!r}, prefix={self.prefix!r})"

    def ensure_mounted(self) -> MountState:
        """Mount the dataset if needed, with exactly one attempt.

        Raises:
            MountFailedError
        """
        try:
            state = self.backend.query_mount_state(self.dataset)
        except __util__.CommandError as e:
            raise __util__.MountFailedError(
                f"Cannot query mount state of {self.dataset}: {e}"
            ) from e
        if state.mounted:
            return state

        logger.warning("Dataset %s is not mounted, attempting to mount", self.dataset)
        try:
            self.backend.mount(self.dataset)
            state = self.backend.query_mount_state(self.dataset)
        except __util__.CommandError as e:
            raise __util__.MountFailedError(f"Failed to mount {self.dataset}: {e}") from e
        if not state.mounted:
            raise __util__.MountFailedError(f"Dataset {self.dataset} is still not mounted")
        logger.info("Mounted %s at %s", self.dataset, state.mountpoint)
        return state

    def candidate_name(self, precise: bool = False) -> str:
        timestamp = self.clock()
        stamp = timestamp.strftime(SNAPSHOT_TIME_FORMAT)
        if precise:
            stamp += f"_{timestamp.microsecond // 1000:03d}"
        return f"{self.prefix}_{stamp}_{self.pid_source()}"

    def list_snapshots(self) -> list[Snapshot]:
        """Snapshots carrying our prefix, oldest first."""
        marker = f"{self.prefix}_"
        return [s for s in self.backend.list_snapshots(self.dataset) if s.name.startswith(marker)]

    def create_snapshot(self) -> Snapshot:
        """Take a uniquely named snapshot of the dataset.

        Raises:
            MountFailedError: the dataset could not be mounted
            NameExhaustedError: every candidate name was taken
        """
        self.ensure_mounted()

        name = self.candidate_name()
        for attempt in range(1, self.max_attempts + 1):
            existing = {s.name for s in self.backend.list_snapshots(self.dataset)}
            if name not in existing:
                try:
                    self.backend.create_snapshot(self.dataset, name)
                except __util__.CommandError as e:
                    # Another run took the name after we listed
                    if "already exists" not in e.stderr:
                        raise
                else:
                    logger.info("Snapshot created: %s@%s", self.dataset, name)
                    return self._lookup(name)

            logger.warning(
                "Snapshot name collision for %s (attempt %d/%d)",
                name,
                attempt,
                self.max_attempts,
            )
            self.sleep(RETRY_DELAY)
            name = self.candidate_name(precise=True)

        raise __util__.NameExhaustedError(
            f"Failed to find a unique snapshot name for {self.dataset} "
            f"after {self.max_attempts} attempts"
        )

    def _lookup(self, name: str) -> Snapshot:
        for snapshot in self.backend.list_snapshots(self.dataset):
            if snapshot.name == name:
                return snapshot
        logger.debug("Snapshot %s not listed yet, using local clock", name)
        return Snapshot(dataset=self.dataset, name=name, creation=self.clock())

    def previous(self, snapshot: Snapshot) -> Optional[Snapshot]:
        """The retained snapshot taken just before ``snapshot``."""
        earlier = None
        for candidate in self.list_snapshots():
            if candidate.name == snapshot.name:
                return earlier
            earlier = candidate
        return earlier

    def replicate(self, snapshot: Snapshot, target: ReplicaTarget) -> Optional[Snapshot]:
        """Send ``snapshot`` to ``target``, incrementally when possible.

        Returns the base snapshot used, None for a full stream.

        Raises:
            ReplicationError: the local snapshot is kept regardless
        """
        base = self.previous(snapshot)
        if base is not None:
            logger.info("Sending %s to %s (incremental from %s)", snapshot.name, target, base.name)
        else:
            logger.info("Sending %s to %s (full stream)", snapshot.name, target)
        try:
            self.backend.send_snapshot(snapshot, target, base)
        except __util__.VaultError as e:
            raise __util__.ReplicationError(
                f"Replication of {snapshot.full_name} to {target} failed: {e}"
            ) from e
        logger.info("Snapshot %s replicated", snapshot.name)
        return base

    def destroy(self, snapshot: Snapshot) -> None:
        self.backend.destroy_snapshot(snapshot)
        logger.info("Destroyed snapshot %s", snapshot.full_name)
