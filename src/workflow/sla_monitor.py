"""SLA monitoring for award applications.

The SLA monitor is a deterministic helper that:
- Scans every application carrying a status deadline.
- Expires correction requests (HOURS_REJECTED) whose deadline has passed,
  acting as the "System" actor.
- Raises one urgent notification per sweep when corrections are due soon.

`sweep_applications` is the pure core: a function of (collection, now)
returning the updated collection and the notifications to send. `SLAMonitor`
wraps it with persistence, per-record locking and a background timer.

DISBURSEMENT_PENDING deadlines are reported by the priority queue but never
auto-expired here; escalation there is manual.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from dotenv import load_dotenv

from src.utils.date_utils import Clock, SystemClock, coerce_dt
from src.workflow.application_store import ApplicationStore, RecordLocks
from src.workflow.notifications import (
    ALERT,
    URGENT,
    LoggingNotificationSink,
    Notification,
    NotificationSink,
    deliver,
)
from src.workflow.state_machine import (
    SYSTEM_ACTOR,
    Application,
    ApplicationStatus,
    apply_transition,
)

load_dotenv()

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
URGENT_WINDOW = timedelta(hours=6)
EXPIRY_COMMENT = "Deadline exceeded"


class SLAMonitorError(Exception):
    """Raised when SLA monitor operations fail."""


@dataclass
class SweepOutcome:
    """Result of the pure sweep over a collection."""

    applications: List[Application]
    notifications: List[Notification] = field(default_factory=list)
    expired_ids: List[str] = field(default_factory=list)
    urgent_ids: List[str] = field(default_factory=list)


@dataclass
class SweepReport:
    """What one persisted sweep cycle did."""

    expired_count: int
    notified: bool
    expired_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    urgent_ids: List[str] = field(default_factory=list)


def is_expiry_due(application: Application, now: datetime) -> bool:
    if application.status != ApplicationStatus.HOURS_REJECTED:
        return False
    if application.status_deadline is None:
        return False
    return application.status_deadline - coerce_dt(now) <= timedelta(0)


def is_urgent(application: Application, now: datetime) -> bool:
    if application.status != ApplicationStatus.HOURS_REJECTED:
        return False
    if application.status_deadline is None:
        return False
    remaining = application.status_deadline - coerce_dt(now)
    return timedelta(0) < remaining < URGENT_WINDOW


def build_notifications(expired_ids: List[str], urgent_ids: List[str]) -> List[Notification]:
    """At most one urgent and one expiry notification per sweep."""

    notifications: List[Notification] = []
    if urgent_ids:
        notifications.append(
            Notification(
                message=(
                    f"{len(urgent_ids)} application(s) must be corrected within "
                    f"{int(URGENT_WINDOW.total_seconds() // 3600)} hours"
                ),
                severity=URGENT,
                application_ids=list(urgent_ids),
            )
        )
    if expired_ids:
        notifications.append(
            Notification(
                message=f"{len(expired_ids)} correction request(s) passed their deadline",
                severity=ALERT,
                application_ids=list(expired_ids),
            )
        )
    return notifications


def sweep_applications(applications: Iterable[Application], now: Any) -> SweepOutcome:
    """Apply deadline expiry to a collection without side effects.

    Args:
        applications: Current records (not mutated).
        now: Sweep time (ISO string or datetime).

    Returns:
        SweepOutcome with the updated records, in input order, and the
        notifications to send.
    """

    now_dt = coerce_dt(now)
    if now_dt is None:
        raise SLAMonitorError("Invalid now datetime")

    updated: List[Application] = []
    expired_ids: List[str] = []
    urgent_ids: List[str] = []

    for app in applications:
        if is_expiry_due(app, now_dt):
            result = apply_transition(
                app,
                ApplicationStatus.HOURS_REJECTION_EXPIRED,
                actor=SYSTEM_ACTOR,
                now=now_dt,
                comment=EXPIRY_COMMENT,
            )
            updated.append(result.application)
            expired_ids.append(app.id)
            continue

        if is_urgent(app, now_dt):
            urgent_ids.append(app.id)
        updated.append(app)

    return SweepOutcome(
        applications=updated,
        notifications=build_notifications(expired_ids, urgent_ids),
        expired_ids=expired_ids,
        urgent_ids=urgent_ids,
    )


class SLAMonitor:
    """Monitors and enforces status deadlines using an ApplicationStore."""

    def __init__(
        self,
        store: ApplicationStore,
        locks: Optional[RecordLocks] = None,
        sink: Optional[NotificationSink] = None,
        clock: Optional[Clock] = None,
        interval: Optional[timedelta] = None,
    ) -> None:
        self.store = store
        self.locks = locks or RecordLocks()
        self.sink = sink or LoggingNotificationSink()
        self.clock = clock or SystemClock()
        self.interval = interval or timedelta(seconds=SWEEP_INTERVAL_SECONDS)
        if self.interval <= timedelta(0) or self.interval >= URGENT_WINDOW:
            raise SLAMonitorError(
                f"Sweep interval must be positive and shorter than {URGENT_WINDOW}"
            )

        self.last_report: Optional[SweepReport] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Periodic evaluation
    # ------------------------------------------------------------------

    def run(self, now: Optional[Any] = None) -> SweepReport:
        """Run one sweep cycle and persist any expiries.

        Each expiry is committed under the record's lock after reloading it,
        so a record already moved on (by a manual transition or an earlier
        sweep) is left alone. A failure on one record is logged and the
        cycle continues with the rest.
        """

        now_dt = coerce_dt(now) if now is not None else self.clock.now()
        if now_dt is None:
            raise SLAMonitorError("Invalid now datetime")

        plan = sweep_applications(self.store.load_all(), now_dt)

        expired: List[str] = []
        failed: List[str] = []
        for application_id in plan.expired_ids:
            try:
                if self._expire_one(application_id, now_dt):
                    expired.append(application_id)
            except Exception:
                logger.exception("SLA expiry failed for %s", application_id)
                failed.append(application_id)

        notifications = build_notifications(expired, plan.urgent_ids)
        deliver(self.sink, notifications)
        if plan.urgent_ids:
            logger.warning(
                "Corrections due within %s: %s", URGENT_WINDOW, ", ".join(plan.urgent_ids)
            )

        report = SweepReport(
            expired_count=len(expired),
            notified=any(n.severity == URGENT for n in notifications),
            expired_ids=expired,
            failed_ids=failed,
            urgent_ids=list(plan.urgent_ids),
        )
        self.last_report = report
        logger.info(
            "SLA sweep at %s: %d expired, %d failed, urgent=%s",
            now_dt.isoformat(),
            report.expired_count,
            len(failed),
            report.notified,
        )
        return report

    def _expire_one(self, application_id: str, now: datetime) -> bool:
        with self.locks.for_id(application_id):
            current = self.store.get(application_id)
            if current is None:
                return False

            outcome = sweep_applications([current], now)
            if not outcome.expired_ids:
                return False

            self.store.save_workflow_state(
                outcome.applications[0], expected_version=current.version
            )
            logger.warning(
                "Application %s expired: correction deadline %s passed",
                application_id,
                current.status_deadline.isoformat() if current.status_deadline else "?",
            )
            return True

    # ------------------------------------------------------------------
    # Background timer
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sweeping on a daemon thread; the first sweep runs immediately."""

        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sla-monitor", daemon=True)
        self._thread.start()
        logger.info("SLA monitor started (interval %ss)", self.interval.total_seconds())

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the timer; an in-flight sweep finishes first."""

        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("SLA monitor stopped")

    def _loop(self) -> None:
        self._tick()
        while not self._stop.wait(self.interval.total_seconds()):
            self._tick()

    def _tick(self) -> None:
        try:
            self.run()
        except Exception:
            logger.exception(
                "SLA sweep failed; retrying in %ss", self.interval.total_seconds()
            )
