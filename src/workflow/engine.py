"""Workflow engine facade.

`WorkflowEngine` is the single entry point that mutates the workflow fields
of an application. It combines:
- The transition table and guard (state_machine).
- The SLA monitor for time-based expiry (sla_monitor).
- The priority classifier for the operations queue (priority).
- An ApplicationStore for persistence, with per-record locking.

Collaborators are injected: a RoleProvider for the acting role, a Clock, and
a NotificationSink for operator toasts.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union

from src.utils.date_utils import Clock, SystemClock, coerce_dt
from src.workflow.application_store import ApplicationStore, RecordLocks
from src.workflow.notifications import (
    ALERT,
    INFO,
    LoggingNotificationSink,
    Notification,
    NotificationSink,
    deliver,
)
from src.workflow.priority import Priority, group_by_priority
from src.workflow.sla_monitor import SLAMonitor, SweepReport
from src.workflow.state_machine import (
    STATUS_LABELS,
    SYSTEM_ACTOR,
    Application,
    ApplicationNotFoundError,
    ApplicationStatus,
    ApplicationValidationError,
    Role,
    TransitionResult,
    TransitionRule,
    apply_transition,
    check_transition,
    get_next_actions,
    new_application,
    parse_status,
)

logger = logging.getLogger(__name__)


class RoleProvider(Protocol):
    def current_role(self) -> str:
        ...


class StaticRoleProvider:
    """Role provider holding a single, switchable role."""

    def __init__(self, role: Union[Role, str] = Role.ADMIN) -> None:
        self.set_role(role)

    def set_role(self, role: Union[Role, str]) -> None:
        self._role = role.value if isinstance(role, Role) else str(role)

    def current_role(self) -> str:
        return self._role


def generate_application_id() -> str:
    return f"APP_{uuid.uuid4().hex[:12].upper()}"


class WorkflowEngine:
    """Role-gated, SLA-aware workflow over an ApplicationStore."""

    def __init__(
        self,
        store: ApplicationStore,
        roles: Optional[RoleProvider] = None,
        clock: Optional[Clock] = None,
        sink: Optional[NotificationSink] = None,
        monitor: Optional[SLAMonitor] = None,
    ) -> None:
        self.store = store
        self.roles = roles or StaticRoleProvider()
        self.clock = clock or SystemClock()
        self.sink = sink or LoggingNotificationSink()
        self.monitor = monitor or SLAMonitor(store, sink=self.sink, clock=self.clock)
        # Manual transitions and the SLA sweep serialize on the same locks.
        self.locks: RecordLocks = self.monitor.locks

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_application(
        self, initial_fields: Dict[str, Any], actor: str = SYSTEM_ACTOR
    ) -> Application:
        """Create a DRAFT application and persist it.

        Raises:
            ApplicationValidationError: Missing student_id, negative amounts,
                or a non-DRAFT initial status.
        """

        fields = dict(initial_fields or {})
        application_id = str(fields.get("id") or generate_application_id())
        application = new_application(application_id, fields, actor, self.clock.now())

        with self.locks.for_id(application_id):
            if self.store.get(application_id) is not None:
                raise ApplicationValidationError(f"Application already exists: {application_id}")
            self.store.save(application)

        logger.info("Created application %s for student %s", application.id, application.student_id)
        return application

    def get_application(self, application_id: str) -> Application:
        application = self.store.get(application_id)
        if application is None:
            raise ApplicationNotFoundError(
                f"Application not found: {application_id}", application_id=application_id
            )
        return application

    def transition(
        self,
        application_id: str,
        target: Union[ApplicationStatus, str],
        comment: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> TransitionResult:
        """Move an application to `target` on behalf of the current role.

        The read, guard, strike policy, deadline, audit append and write-back
        happen under the record's lock and are persisted in one store write.

        Args:
            application_id: Application identifier.
            target: Requested status (enum, value or member name).
            comment: Operator comment; mandatory on some edges.
            actor: Display name for the audit trail. Defaults to the role id.

        Returns:
            TransitionResult whose `status` is the effective status. It is
            CANCELLED instead of HOURS_REJECTED when the rejection limit hit.

        Raises:
            ApplicationNotFoundError, InvalidTransitionError,
            UnauthorizedTransitionError, MissingCommentError,
            ConcurrentModificationError.
        """

        requested = parse_status(target)
        role = self.roles.current_role()
        actor_name = actor or role

        with self.locks.for_id(application_id):
            current = self.get_application(application_id)
            check_transition(current, requested, role, comment)
            result = apply_transition(
                current, requested, actor=actor_name, now=self.clock.now(), comment=comment
            )
            self.store.save_workflow_state(result.application, expected_version=current.version)

        self._after_transition(result)
        return result

    def next_actions(self, application_id: str) -> List[TransitionRule]:
        """Edges the current role may take on this application."""

        application = self.get_application(application_id)
        return get_next_actions(application.status, self.roles.current_role())

    def list_by_priority(self, now: Optional[datetime] = None) -> Dict[Priority, List[Application]]:
        now_dt = coerce_dt(now) if now is not None else self.clock.now()
        return group_by_priority(self.store.load_all(), now_dt)

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return self.monitor.run(now if now is not None else self.clock.now())

    def start_sweeper(self) -> None:
        self.monitor.start()

    def stop_sweeper(self) -> None:
        self.monitor.stop()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _after_transition(self, result: TransitionResult) -> None:
        app = result.application
        if result.strike_applied:
            logger.warning(
                "Application %s cancelled: rejection limit reached (%d rejections)",
                app.id,
                app.rejection_count,
            )
            note = Notification(
                message=f"Application {app.id} cancelled after repeated rejections",
                severity=ALERT,
                application_ids=[app.id],
            )
        else:
            logger.info(
                "Application %s: %s -> %s by %s",
                app.id,
                result.previous.value,
                app.status.value,
                app.status_updated_by,
            )
            note = Notification(
                message=f"Status updated to: {STATUS_LABELS[app.status]}",
                severity=INFO,
                application_ids=[app.id],
            )
        deliver(self.sink, [note])
