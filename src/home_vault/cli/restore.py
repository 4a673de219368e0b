"""Restore command: copy a backup back over the home directory."""

import argparse
import logging
import time

from .. import __util__
from ..core.operations import Vault
from ..core.store import VersionStatus
from .common import confirm, is_attended, load_cli_config, run_lock, setup_logging

logger = logging.getLogger(__name__)


def execute_restore(args: argparse.Namespace) -> int:
    """Execute the restore command.

    Without ``--dry-run`` the destination is overwritten and files missing
    from the backup are deleted, so the user has to confirm, or pass
    ``--yes`` when unattended.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    setup_logging(args)
    config = load_cli_config(args)
    if config is None:
        return 1
    setup_logging(args, config)

    if getattr(args, "list", False):
        return _execute_list(Vault(config))

    source = getattr(args, "source", "local")
    version_id = getattr(args, "version_id", None)
    destination = getattr(args, "destination", None) or config.vault.source_path
    dry_run = getattr(args, "dry_run", False)
    attended = is_attended(args)

    if not dry_run and not getattr(args, "yes", False):
        if not attended:
            print("Refusing to overwrite files unattended; pass --yes to confirm")
            return 1
        print(f"WARNING: This will OVERWRITE files in {destination}")
        print("Files not in the backup will be DELETED")
        if not confirm("Continue with the restore?"):
            print("Cancelled")
            return 0

    logger.info(__util__.log_heading(f"Restore started at {time.ctime()}"))
    try:
        with run_lock(config):
            vault = Vault(config, attended=attended, confirm=confirm)
            report = vault.restore(
                source, version_id=version_id, destination=destination, dry_run=dry_run
            )
    except __util__.VaultError as e:
        logger.error("Restore failed: %s", e)
        return 1
    logger.info(__util__.log_heading(f"Restore finished at {time.ctime()}"))

    if dry_run:
        print(f"Would restore {len(report.files_restored)} file(s) from {report.source}")
        for name in report.files_restored:
            print(f"  {name}")
        return 0

    print(
        f"Restored {len(report.files_restored)} file(s), "
        f"{__util__.format_size(report.bytes_restored)} from {report.source}"
    )
    if report.safety_copy is not None:
        print(f"Previous contents saved to: {report.safety_copy}")
    return 0


def _execute_list(vault: Vault) -> int:
    """List the local versions that can be restored."""
    if vault.store is None:
        print("No local destination configured")
        return 1
    versions = vault.store.list_versions(VersionStatus.COMPLETE)
    if not versions:
        print(f"No complete versions in {vault.store.root}")
        return 0

    current = vault.store.current()
    print(f"Restorable versions in {vault.store.root}:")
    for version in versions:
        marker = " (current)" if current is not None and version.id == current.id else ""
        size = __util__.format_size(version.size_bytes) if version.size_bytes is not None else "-"
        print(f"  {version.id}  {size}{marker}")
    return 0
