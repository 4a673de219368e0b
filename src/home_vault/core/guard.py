"""Connectivity and capacity guard.

Runs before any mutating operation against a destination. Every failure
raises, so the caller aborts the cycle before anything is written or deleted.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .. import __util__
from ..endpoint import DiskUsage, Endpoint

logger = logging.getLogger(__name__)


@dataclass
class CapacityCheck:
    """What the capacity check saw."""

    usage: Optional[DiskUsage]
    required_bytes: int = 0
    low_space: bool = False
    overridden: bool = False


class DestinationGuard:
    """Verify a destination is reachable, writable and has room.

    Args:
        min_free_percent: Fail with LowSpaceError when used space exceeds
            ``100 - min_free_percent``
        attended: A human can answer prompts
        confirm: Prompt callback used to override LowSpaceError once, only
            consulted when ``attended``
    """

    def __init__(
        self,
        min_free_percent: int = 10,
        attended: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.min_free_percent = min_free_percent
        self.attended = attended
        self.confirm = confirm

    def ensure_reachable(self, endpoint: Endpoint) -> None:
        """Raise RemoteUnreachableError when a remote endpoint does not answer."""
        endpoint.check_reachable()

    def ensure_writable(self, endpoint: Endpoint) -> None:
        """Create the destination and prove it accepts writes.

        A read-only mount point gets exactly one remount attempt followed by
        one more probe.

        Raises:
            NotWritableError
        """
        logger.debug("Checking if %r is writable", endpoint)
        if not endpoint.makedirs():
            raise __util__.NotWritableError(
                f"Cannot create destination directory {endpoint!r}"
            )

        if endpoint.probe_write():
            logger.debug("Destination %r is writable", endpoint)
            return

        logger.error("Destination %r is not writable (read-only or disconnected)", endpoint)
        if endpoint.is_mountpoint():
            logger.warning("Drive is read-only, attempting remount of %r", endpoint)
            if endpoint.remount_rw():
                logger.info("Remounted %r read-write", endpoint)
                if endpoint.probe_write():
                    logger.info("Write test passed after remount")
                    return
            else:
                logger.error("Remount failed, the drive may be write-protected")

        raise __util__.NotWritableError(f"Destination {endpoint!r} is not writable")

    def ensure_capacity(self, endpoint: Endpoint, required_bytes: int = 0) -> CapacityCheck:
        """Check free space on the destination's filesystem.

        Raises:
            LowSpaceError: used space above the threshold and not overridden
            InsufficientSpaceError: less free space than ``required_bytes``,
                never overridable
        """
        usage = endpoint.disk_usage()
        check = CapacityCheck(usage=usage, required_bytes=required_bytes)
        if usage is None:
            logger.warning("Could not determine disk space for %r", endpoint)
            return check

        logger.info(
            "Disk space: %s free (%d%% used)",
            __util__.format_size(usage.free),
            usage.used_percent,
        )

        if usage.used_percent > 100 - self.min_free_percent:
            check.low_space = True
            message = (
                f"Less than {self.min_free_percent}% disk space remaining on "
                f"{endpoint!r} ({__util__.format_size(usage.free)} free)"
            )
            logger.error("%s", message)
            if self.attended and self.confirm is not None and self.confirm(
                f"{message}. Continue anyway?"
            ):
                logger.warning("Low disk space overridden by user")
                check.overridden = True
            else:
                raise __util__.LowSpaceError(message)

        if required_bytes > 0:
            if usage.free < required_bytes:
                raise __util__.InsufficientSpaceError(
                    f"Insufficient space: need {__util__.format_size(required_bytes)}, "
                    f"only {__util__.format_size(usage.free)} free"
                )
            logger.info(
                "Sufficient space: need %s, %s free",
                __util__.format_size(required_bytes),
                __util__.format_size(usage.free),
            )
        return check

    def preflight(self, endpoint: Endpoint, required_bytes: int = 0) -> CapacityCheck:
        """Reachability, writability and capacity, in that order."""
        self.ensure_reachable(endpoint)
        self.ensure_writable(endpoint)
        return self.ensure_capacity(endpoint, required_bytes)
