"""Configuration system for home-vault.

This module provides TOML-based configuration loading, validation,
and schema definitions for the backup engine.
"""

from .loader import ConfigError, find_config_file, load_config
from .schema import (
    Config,
    LocalConfig,
    RemoteConfig,
    RetentionConfig,
    VaultConfig,
    ZfsConfig,
)

__all__ = [
    "Config",
    "LocalConfig",
    "RemoteConfig",
    "RetentionConfig",
    "VaultConfig",
    "ZfsConfig",
    "load_config",
    "find_config_file",
    "ConfigError",
]
