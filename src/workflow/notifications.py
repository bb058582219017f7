"""Notification sinks for workflow events.

Notifications are best-effort: a sink that raises is logged and ignored so
that a failed toast or log write never fails a transition or a sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Protocol

logger = logging.getLogger(__name__)

INFO = "info"
ALERT = "alert"
URGENT = "urgent"


@dataclass
class Notification:
    """A message for the operator notification area."""

    message: str
    severity: str = INFO
    application_ids: List[str] = field(default_factory=list)


class NotificationSink(Protocol):
    def notify(self, message: str, severity: str) -> None:
        ...


class LoggingNotificationSink:
    """Writes notifications to the application log."""

    _LEVELS = {INFO: logging.INFO, ALERT: logging.WARNING, URGENT: logging.WARNING}

    def __init__(self, logger_name: str = "workflow.notifications") -> None:
        self._logger = logging.getLogger(logger_name)

    def notify(self, message: str, severity: str) -> None:
        self._logger.log(self._LEVELS.get(severity, logging.INFO), "[%s] %s", severity.upper(), message)


def deliver(sink: NotificationSink, notifications: Iterable[Notification]) -> int:
    """Send notifications, returning how many were accepted by the sink."""

    delivered = 0
    for note in notifications:
        try:
            sink.notify(note.message, note.severity)
            delivered += 1
        except Exception:
            logger.warning("Notification delivery failed: %s", note.message, exc_info=True)
    return delivered
