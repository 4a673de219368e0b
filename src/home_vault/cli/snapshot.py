"""Snapshot command: list, create or prune ZFS snapshots."""

import argparse
import logging

from .. import __util__
from ..core.operations import Vault
from .common import load_cli_config, run_lock, setup_logging
from .prune import print_report

logger = logging.getLogger(__name__)


def execute_snapshot(args: argparse.Namespace) -> int:
    """Execute the snapshot command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    action = getattr(args, "snapshot_action", None)
    if action not in ("list", "create", "prune"):
        print("Usage: home-vault snapshot <list|create|prune>")
        return 1

    setup_logging(args)
    config = load_cli_config(args)
    if config is None:
        return 1
    setup_logging(args, config)

    try:
        vault = Vault(config)
        if action == "list":
            return _list(vault)
        with run_lock(config):
            if action == "create":
                snapshot = vault.create_snapshot()
                print(f"Created {snapshot.full_name}")
                return 0
            report = vault.prune_snapshots(dry_run=getattr(args, "dry_run", False))
    except __util__.VaultError as e:
        logger.error("%s", e)
        return 1

    print_report("snapshots", report)
    return 1 if report.errors else 0


def _list(vault: Vault) -> int:
    snapshots = vault.list_snapshots()
    if not snapshots:
        print("No snapshots")
        return 0
    for snapshot in snapshots:
        print(
            f"{snapshot.full_name:<60} {snapshot.creation:%Y-%m-%d %H:%M:%S} "
            f"{__util__.format_size(snapshot.used_bytes):>12}"
        )
    print(f"{len(snapshots)} snapshot(s)")
    return 0
