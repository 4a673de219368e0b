"""Notification sinks.

Delivery is fire-and-forget: a sink never raises and a failed notification
never changes the outcome of a cycle.
"""

import logging
import shutil
from typing import Protocol

from .. import __util__

logger = logging.getLogger(__name__)

URGENCIES = ("low", "normal", "critical")


class NotificationSink(Protocol):
    def notify(self, title: str, message: str, urgency: str = "normal") -> None: ...


class NullSink:
    """Discards notifications."""

    def notify(self, title: str, message: str, urgency: str = "normal") -> None:
        logger.debug("Notification (disabled): %s: %s", title, message)


class NotifySendSink:
    """Desktop notifications through ``notify-send``."""

    def __init__(self, app_name: str = "Home Vault", binary: str = "notify-send") -> None:
        self.app_name = app_name
        self.binary = binary

    @property
    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def notify(self, title: str, message: str, urgency: str = "normal") -> None:
        if urgency not in URGENCIES:
            urgency = "normal"
        if not self.available:
            logger.debug("%s not found, notification skipped: %s", self.binary, title)
            return
        try:
            __util__.exec_subprocess(
                [
                    self.binary,
                    "-u", urgency,
                    "-i", "dialog-information",
                    f"{self.app_name}: {title}",
                    message,
                ],
                timeout=5,
            )
        except __util__.CommandError as e:
            logger.debug("Notification failed: %s", e)


def create_sink(enabled: bool) -> NotificationSink:
    return NotifySendSink() if enabled else NullSink()
