"""home-vault: home_vault/__init__.py.

Versioned, hard-link deduplicated backups of a home directory.
"""

__version__ = "0.1.0"
