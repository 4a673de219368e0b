"""Exclusions command: show the effective exclusion patterns."""

import argparse

from ..core.exclusions import STORE_PATTERNS, resolve_exclusions
from .common import load_cli_config, setup_logging


def execute_exclusions(args: argparse.Namespace) -> int:
    setup_logging(args)
    config = load_cli_config(args)
    if config is None:
        return 1

    exclusions = resolve_exclusions(config)
    print(f"Exclusions for {config.vault.source_path} ({len(exclusions)} patterns)")
    print("=" * 60)
    for pattern in exclusions:
        marker = "*" if pattern in STORE_PATTERNS else " "
        print(f" {marker} {pattern}")
    print("")
    print("* always excluded (home-vault's own files)")
    return 0
