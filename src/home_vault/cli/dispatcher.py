"""CLI dispatcher.

Builds the subcommand parser and routes each command to its
``execute_*`` handler.
"""

import argparse
import sys
from typing import Callable

from .common import add_dry_run_arg, add_unattended_args, add_verbosity_args


def create_subcommand_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="home-vault",
        description="Versioned home directory backups with hard-link deduplication",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    add_verbosity_args(parser)

    parser.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Path to configuration file",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands (use 'command --help' for details)",
    )

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run a backup cycle",
        description="Create a new version, snapshot it and apply retention",
    )
    run_parser.add_argument(
        "-t",
        "--target",
        choices=["local", "remote", "all"],
        default="all",
        help="Destination to back up to (default: every configured one)",
    )
    add_unattended_args(run_parser)

    # repair command
    repair_parser = subparsers.add_parser(
        "repair",
        help="Find and fix corrupted files on the remote mirror",
        description="Checksum-compare the source with the remote mirror and rewrite differences",
    )
    add_unattended_args(repair_parser)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore the home directory from a backup",
        description="Copy a local version or the NAS mirror back over the home directory",
    )
    restore_parser.add_argument(
        "-f",
        "--from",
        dest="source",
        choices=["local", "remote"],
        default="local",
        help="Backup to restore from (default: local)",
    )
    restore_parser.add_argument(
        "--version-id",
        metavar="ID",
        help="Local version to restore (default: current)",
    )
    restore_parser.add_argument(
        "--to",
        dest="destination",
        metavar="DIR",
        help="Directory to restore into (default: the configured source)",
    )
    restore_parser.add_argument(
        "--list",
        action="store_true",
        help="List restorable local versions and exit",
    )
    restore_parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Overwrite without asking",
    )
    add_dry_run_arg(restore_parser, "Show what would be restored without making changes")
    add_unattended_args(restore_parser)

    # prune command
    prune_parser = subparsers.add_parser(
        "prune",
        help="Apply the retention policy",
        description="Delete versions older than the configured retention",
    )
    add_dry_run_arg(prune_parser, "Show what would be deleted without making changes")
    prune_parser.add_argument(
        "--snapshots",
        action="store_true",
        help="Also prune ZFS snapshots",
    )

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show store status",
        description="Display the current version, version counts, disk usage and recent runs",
    )
    status_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=5,
        metavar="N",
        help="Number of transactions to show (default: 5)",
    )

    # snapshot command with subcommands
    snapshot_parser = subparsers.add_parser(
        "snapshot",
        help="Manage ZFS snapshots",
        description="List, create or prune snapshots of the backup dataset",
    )
    snapshot_subs = snapshot_parser.add_subparsers(dest="snapshot_action")
    snapshot_subs.add_parser("list", help="List managed snapshots")
    snapshot_subs.add_parser("create", help="Create a snapshot now")
    snapshot_prune = snapshot_subs.add_parser("prune", help="Destroy expired snapshots")
    add_dry_run_arg(snapshot_prune, "Show what would be destroyed without making changes")

    # exclusions command
    subparsers.add_parser(
        "exclusions",
        help="Show the effective exclusion patterns",
        description="List every pattern passed to the transfer service",
    )

    # config command with subcommands
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Validate or initialize configuration",
    )
    config_subs = config_parser.add_subparsers(dest="config_action")

    config_subs.add_parser(
        "validate",
        help="Validate configuration file",
    )

    init_parser = config_subs.add_parser(
        "init",
        help="Generate example configuration",
    )
    init_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Output file (default: stdout)",
    )

    return parser


def run_subcommand(args: argparse.Namespace) -> int:
    """Run the specified subcommand.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    from .. import __version__

    if args.version:
        print(f"home-vault {__version__}")
        return 0

    if not args.command:
        print("No command specified. Use --help for usage information.")
        return 1

    handlers: dict[str, Callable] = {
        "run": cmd_run,
        "repair": cmd_repair,
        "restore": cmd_restore,
        "prune": cmd_prune,
        "status": cmd_status,
        "snapshot": cmd_snapshot,
        "exclusions": cmd_exclusions,
        "config": cmd_config,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


def cmd_run(args: argparse.Namespace) -> int:
    """Execute run command."""
    from .run import execute_run

    return execute_run(args)


def cmd_repair(args: argparse.Namespace) -> int:
    """Execute repair command."""
    from .repair import execute_repair

    return execute_repair(args)


def cmd_restore(args: argparse.Namespace) -> int:
    """Execute restore command."""
    from .restore import execute_restore

    return execute_restore(args)


def cmd_prune(args: argparse.Namespace) -> int:
    """Execute prune command."""
    from .prune import execute_prune

    return execute_prune(args)


def cmd_status(args: argparse.Namespace) -> int:
    """Execute status command."""
    from .status import execute_status

    return execute_status(args)


def cmd_snapshot(args: argparse.Namespace) -> int:
    """Execute snapshot command."""
    from .snapshot import execute_snapshot

    return execute_snapshot(args)


def cmd_exclusions(args: argparse.Namespace) -> int:
    """Execute exclusions command."""
    from .exclusions_cmd import execute_exclusions

    return execute_exclusions(args)


def cmd_config(args: argparse.Namespace) -> int:
    """Execute config command."""
    from .config_cmd import execute_config

    return execute_config(args)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the home-vault CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = create_subcommand_parser()
    args = parser.parse_args(argv)
    return run_subcommand(args)
