"""home-vault: home_vault/sshutil/__init__.py."""

from .connection import SSHConnection

__all__ = ["SSHConnection"]
