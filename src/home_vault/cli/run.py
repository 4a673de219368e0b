"""Run command: execute a backup cycle."""

import argparse
import logging
import time

from .. import __util__
from ..core.operations import CycleResult, Vault
from .common import confirm, is_attended, load_cli_config, run_lock, setup_logging

logger = logging.getLogger(__name__)


def execute_run(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    setup_logging(args)
    config = load_cli_config(args)
    if config is None:
        return 1
    setup_logging(args, config)

    attended = is_attended(args)
    if not attended:
        logger.debug("Unattended mode: prompts resolve to abort")

    target = getattr(args, "target", "all")
    logger.info(__util__.log_heading(f"Started at {time.ctime()}"))
    try:
        with run_lock(config):
            vault = Vault(config, attended=attended, confirm=confirm)
            results = vault.run(target)
    except __util__.VaultError as e:
        logger.error("%s", e)
        return 1
    logger.info(__util__.log_heading(f"Finished at {time.ctime()}"))

    for result in results:
        _report(result)

    failed = [r for r in results if not r.success]
    if failed:
        logger.warning(
            "Completed with errors: %d succeeded, %d failed",
            len(results) - len(failed),
            len(failed),
        )
        return 1
    logger.info("All %d backup(s) completed successfully", len(results))
    return 0


def _report(result: CycleResult) -> None:
    if not result.success:
        logger.error("%s backup failed: %s", result.target.capitalize(), result.error)
        if result.version is not None:
            logger.error("Partial version kept for inspection: %s", result.version.path)
        return

    if result.version is not None:
        logger.info(
            "Version %s: %d files, %s",
            result.version.id,
            result.version.file_count or 0,
            __util__.format_size(result.version.size_bytes),
        )
    if result.transfer is not None:
        logger.info(
            "Transferred %d file(s), %s in %.1fs",
            result.transfer.files_transferred,
            __util__.format_size(result.transfer.bytes_transferred),
            result.duration,
        )
    if result.snapshot is not None:
        logger.info("Snapshot: %s", result.snapshot.full_name)
    for report in (result.prune, result.snapshot_prune):
        if report is not None and report.deleted_count:
            logger.info(
                "Pruned %d expired item(s), %s freed",
                report.deleted_count,
                __util__.format_size(report.bytes_freed),
            )
    for warning in result.warnings:
        logger.warning("%s", warning)
