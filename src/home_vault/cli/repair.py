"""Repair command: checksum reconciliation of the remote mirror."""

import argparse
import logging

from .. import __util__
from ..core.operations import Vault
from .common import is_attended, load_cli_config, run_lock, setup_logging

logger = logging.getLogger(__name__)


def execute_repair(args: argparse.Namespace) -> int:
    """Execute the repair command.

    Exit code 0 means the mirror was healthy or has been repaired.
    """
    setup_logging(args)
    config = load_cli_config(args)
    if config is None:
        return 1
    setup_logging(args, config)

    try:
        with run_lock(config):
            vault = Vault(config, attended=is_attended(args))
            report = vault.repair()
    except __util__.VaultError as e:
        logger.error("Repair failed: %s", e)
        return 1

    if report.healthy:
        print("Backup healthy: no corruption found")
    else:
        print(
            f"Repaired {len(report.files_repaired)} file(s), "
            f"{__util__.format_size(report.bytes_reconciled)} reconciled"
        )
        for name in report.files_repaired:
            print(f"  {name}")
    return 0
