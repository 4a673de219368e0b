# pyright: standard

"""home-vault: home_vault/endpoint/__init__.py."""

from ..config import RemoteConfig

from .common import DiskUsage, Endpoint
from .local import LocalEndpoint
from .ssh import SSHEndpoint

__all__ = [
    "DiskUsage",
    "Endpoint",
    "LocalEndpoint",
    "SSHEndpoint",
    "remote_endpoint",
]


def remote_endpoint(remote: RemoteConfig, subpath: str | None = None) -> SSHEndpoint:
    """Build the SSH endpoint described by the [remote] configuration."""
    path = remote.path.rstrip("/") or "/"
    if subpath:
        path = f"{path}/{subpath}"
    return SSHEndpoint(
        config={
            "hostname": remote.host,
            "username": remote.user,
            "port": remote.port,
            "identity_file": remote.identity_file,
            "connect_timeout": remote.connect_timeout,
            "alive_interval": remote.alive_interval,
            "path": path,
        }
    )
