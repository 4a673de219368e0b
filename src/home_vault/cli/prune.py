"""Prune command: apply retention policies."""

import argparse
import logging
import time

from .. import __util__
from ..core.operations import Vault
from ..core.retention import PruneReport
from .common import load_cli_config, run_lock, setup_logging

logger = logging.getLogger(__name__)


def execute_prune(args: argparse.Namespace) -> int:
    """Execute the prune command.

    Deletes versions (and with ``--snapshots`` also ZFS snapshots) older than
    the configured retention.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    setup_logging(args)
    config = load_cli_config(args)
    if config is None:
        return 1
    setup_logging(args, config)

    dry_run = getattr(args, "dry_run", False)
    if dry_run:
        logger.info("Dry run mode - showing what would be deleted")

    logger.info(__util__.log_heading(f"Pruning at {time.ctime()}"))

    reports = []
    try:
        with run_lock(config):
            vault = Vault(config)
            reports.append(("versions", vault.prune(dry_run=dry_run)))
            if getattr(args, "snapshots", False):
                reports.append(("snapshots", vault.prune_snapshots(dry_run=dry_run)))
    except __util__.VaultError as e:
        logger.error("%s", e)
        return 1

    errors = 0
    for kind, report in reports:
        print_report(kind, report)
        errors += len(report.errors)
    return 1 if errors else 0


def print_report(kind: str, report: PruneReport) -> None:
    verb = "Would delete" if report.dry_run else "Deleted"
    print(f"{verb} {report.deleted_count} {kind}, {__util__.format_size(report.bytes_freed)}")
    for name in report.deleted:
        print(f"  {name}")
    for error in report.errors:
        print(f"  error: {error}")
