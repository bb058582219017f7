"""Priority classification for the operations work queue.

Buckets open applications into P0 (most urgent) to P3. The bucket is a
display concern only; it is computed on read and never persisted.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from src.utils.date_utils import hours_until
from src.workflow.state_machine import Application, ApplicationStatus, TERMINAL_STATUSES


class Priority(Enum):
    P0 = "P0"  # expired or due within 24h
    P1 = "P1"  # 1-3 days
    P2 = "P2"  # 3-7 days, or waiting for first review
    P3 = "P3"


PRIORITY_DESCRIPTIONS: Dict[Priority, str] = {
    Priority.P0: "Critical: expired or due within 24 hours",
    Priority.P1: "High: due within 3 days",
    Priority.P2: "Normal: due within 7 days or awaiting review",
    Priority.P3: "Low: no pressing deadline",
}

# (upper bound in hours, bucket), checked in order.
DEADLINE_BANDS = (
    (24.0, Priority.P0),
    (72.0, Priority.P1),
    (168.0, Priority.P2),
)

_AWAITING_REVIEW = (ApplicationStatus.SUBMITTED, ApplicationStatus.RESUBMITTED)


def priority_of(application: Application, now: datetime) -> Optional[Priority]:
    """Classify an application; terminal applications return None."""

    if application.status in TERMINAL_STATUSES:
        return None

    if application.status == ApplicationStatus.HOURS_REJECTION_EXPIRED:
        return Priority.P0

    if application.status_deadline is None:
        if application.status in _AWAITING_REVIEW:
            return Priority.P2
        return Priority.P3

    h = hours_until(application.status_deadline, now)
    for bound, bucket in DEADLINE_BANDS:
        if h < bound:
            return bucket
    return Priority.P3


def _queue_sort_key(application: Application):
    deadline = application.status_deadline
    return (
        deadline is None,
        deadline.timestamp() if deadline is not None else 0.0,
        application.status_updated_at.timestamp(),
        application.id,
    )


def group_by_priority(
    applications: Iterable[Application], now: datetime
) -> Dict[Priority, List[Application]]:
    """Group open applications into all four buckets, earliest deadline first."""

    buckets: Dict[Priority, List[Application]] = {p: [] for p in Priority}
    for app in applications:
        bucket = priority_of(app, now)
        if bucket is not None:
            buckets[bucket].append(app)

    for items in buckets.values():
        items.sort(key=_queue_sort_key)
    return buckets
