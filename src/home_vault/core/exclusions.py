"""Exclusion resolver.

Compiles the static pattern set into a filter file for the transfer service.
The store's own configuration and log paths are always part of the set so a
backup never contains the vault itself.
"""

import contextlib
import fnmatch
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

# Always excluded, relative to the source root
STORE_PATTERNS = (
    ".home-vault/",
    ".home-vault/*",
    ".config/home-vault/",
    "*.home-vault*.conf",
)

DEFAULT_PATTERNS = (
    # Cache and temporary files
    ".cache/",
    ".local/share/Trash/",
    ".thumbnails/",
    ".gvfs/",
    ".local/share/gvfs-metadata/",
    # Browser caches
    ".mozilla/firefox/*/Cache/",
    ".mozilla/firefox/*/OfflineCache/",
    ".config/google-chrome/Default/Cache/",
    ".config/google-chrome/Default/Code Cache/",
    ".config/chromium/Default/Cache/",
    ".config/chromium/Default/Code Cache/",
    # Containers and sandboxes
    ".local/share/containers/",
    ".local/share/flatpak/",
    ".var/app/",
    "snap/",
    # Development artifacts
    "venv/",
    ".venv/",
    "__pycache__/",
    "*.pyc",
    "node_modules/",
    ".npm/",
    ".cargo/registry/",
    ".gradle/caches/",
    ".m2/repository/",
    # Temporary files
    "*.tmp",
    "*.temp",
    ".trash/",
    "Downloads/",
    # Snapshot directories
    ".zfs/",
)


class ExclusionSet:
    """Ordered, de-duplicated set of rsync-style exclusion patterns."""

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns: list[str] = []
        for pattern in STORE_PATTERNS:
            self.add(pattern)
        for pattern in patterns:
            self.add(pattern)

    def __iter__(self) -> Iterator[str]:
        return iter(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def __contains__(self, pattern: str) -> bool:
        return pattern in self._patterns

    def __repr__(self) -> str:
        return f"ExclusionSet({self._patterns!r})"

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def add(self, pattern: str) -> None:
        pattern = pattern.strip()
        if pattern and pattern not in self._patterns:
            self._patterns.append(pattern)

    def add_path(self, source: Path, path: Path, is_dir: bool = True) -> None:
        """Exclude ``path`` if it lies inside ``source``."""
        try:
            relative = Path(path).expanduser().resolve().relative_to(
                Path(source).expanduser().resolve()
            )
        except ValueError:
            return
        if str(relative) == ".":
            logger.warning("Refusing to exclude the whole source %s", source)
            return
        # Leading slash anchors the pattern at the transfer root
        anchored = f"/{relative.as_posix()}"
        self.add(anchored + "/" if is_dir else anchored)

    def is_excluded(self, relative_path: str, is_dir: bool = False) -> bool:
        """Whether a path (relative to the source) or any parent is excluded.

        Approximates rsync filter semantics: a trailing ``/`` matches only
        directories, a leading ``/`` or an inner ``/`` anchors the pattern at
        the root, other patterns match any single path component.
        """
        parts = Path(relative_path).parts
        for i in range(len(parts)):
            prefix = "/".join(parts[: i + 1])
            prefix_is_dir = is_dir or i < len(parts) - 1
            if any(self._match(p, prefix, prefix_is_dir) for p in self._patterns):
                return True
        return False

    @staticmethod
    def _match(pattern: str, path: str, is_dir: bool) -> bool:
        if pattern.endswith("/"):
            if not is_dir:
                return False
            pattern = pattern.rstrip("/")
        if pattern.startswith("/"):
            return fnmatch.fnmatchcase(path, pattern.lstrip("/"))
        if "/" in pattern:
            # Unanchored multi-component pattern: match any trailing part
            parts = path.split("/")
            return any(
                fnmatch.fnmatchcase("/".join(parts[i:]), pattern)
                for i in range(len(parts))
            )
        return fnmatch.fnmatchcase(path.rsplit("/", 1)[-1], pattern)

    def write_filter(self, path: Path) -> Path:
        """Write the patterns, one per line, for ``rsync --exclude-from``."""
        path = Path(path)
        path.write_text("".join(f"{p}\n" for p in self._patterns), encoding="utf-8")
        return path

    @contextlib.contextmanager
    def filter_file(self) -> Iterator[Path]:
        """Temporary filter file, removed when the context exits."""
        fd, name = tempfile.mkstemp(prefix=f"home-vault-exclude-{os.getpid()}-")
        os.close(fd)
        path = Path(name)
        try:
            yield self.write_filter(path)
        finally:
            path.unlink(missing_ok=True)


def resolve_exclusions(config) -> ExclusionSet:
    """Build the effective exclusion set for a configuration."""
    vault = config.vault
    patterns: list[str] = []
    if vault.default_excludes:
        patterns.extend(DEFAULT_PATTERNS)
    patterns.extend(vault.exclude)

    exclusions = ExclusionSet(patterns)
    source = vault.source_path
    exclusions.add_path(source, vault.log_path, is_dir=True)
    if config.path is not None:
        exclusions.add_path(source, Path(config.path), is_dir=False)
    if config.local.enabled:
        # A destination inside the source would back up itself
        exclusions.add_path(source, Path(config.local.path), is_dir=True)
    return exclusions
