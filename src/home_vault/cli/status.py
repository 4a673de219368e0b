"""Status command: show store status."""

import argparse
import logging

from .. import __util__
from ..core.operations import Vault
from .common import load_cli_config, setup_logging

logger = logging.getLogger(__name__)


def execute_status(args: argparse.Namespace) -> int:
    """Execute the status command.

    Shows the current version, version counts, disk usage, snapshot state
    and the most recent transactions.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    setup_logging(args)
    config = load_cli_config(args)
    if config is None:
        return 1

    vault = Vault(config)
    status = vault.status(recent=getattr(args, "limit", 5))

    print("home-vault Status")
    print("=" * 60)
    print(f"Config: {config.path}")
    print(f"Source: {status.source}")
    print("")

    healthy = True
    store = status.store
    if store is None:
        print("Local store: not configured")
    else:
        print(f"Local store: {store.root}")
        if store.current is not None:
            print(
                f"  Current: {store.current.id} ({store.current.file_count or 0} files, "
                f"{__util__.format_size(store.current.size_bytes)})"
            )
        else:
            print("  Current: none")
        counts = ", ".join(f"{n} {s}" for s, n in store.counts.items())
        print(f"  Versions: {store.total} ({counts})")
        if store.oldest is not None and store.newest is not None:
            print(f"  Oldest: {store.oldest.id}")
            print(f"  Newest: {store.newest.id}")
        if store.counts.get("failed"):
            healthy = False
        usage = status.disk_usage
        if usage is not None:
            print(
                f"  Disk: {__util__.format_size(usage.free)} free of "
                f"{__util__.format_size(usage.total)} ({usage.used_percent}% used)"
            )
            if usage.used_percent > 100 - config.vault.min_free_percent:
                print(f"  Warning: less than {config.vault.min_free_percent}% free")
                healthy = False

    if config.remote.enabled:
        print(f"Remote mirror: {config.remote.user}@{config.remote.host}:{config.remote.current_path}")

    if config.zfs.enabled:
        print(f"ZFS dataset: {config.zfs.dataset}")
        if status.mount_state is not None:
            mounted = "mounted" if status.mount_state.mounted else "NOT mounted"
            print(f"  State: {mounted} at {status.mount_state.mountpoint or '-'}")
            healthy = healthy and status.mount_state.mounted
        if status.snapshot_count is not None:
            print(f"  Snapshots: {status.snapshot_count}")
        if status.newest_snapshot is not None:
            print(f"  Latest: {status.newest_snapshot.name}")
        for error in status.errors:
            print(f"  Error: {error}")
            healthy = False

    if status.recent:
        print("")
        print("Recent runs:")
        for record in status.recent:
            line = (
                f"  {record.get('timestamp', '?')[:19]}  {record.get('action', '?'):<8} "
                f"{record.get('status', '?')}"
            )
            if record.get("error"):
                line += f"  ({record['error']})"
            print(line)

    print("")
    print(f"Overall: {'healthy' if healthy else 'attention needed'}")
    return 0 if healthy else 1
