"""Deterministic award-application workflow state machine.

This module defines:
- An ApplicationStatus enum covering the full award lifecycle.
- A fixed, role-gated transition table (data, not branching logic).
- The guard, deadline and strike (rejection limit) rules.
- The Application record and its append-only audit trail.

Everything here is a pure function of (record, now). Persistence, locking
and notification live in the store, engine and SLA monitor modules.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from src.utils.date_utils import coerce_dt, utcnow


class ApplicationStatus(Enum):
    """All award-application states."""

    # Application
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"

    # Service-hours verification
    HOURS_VERIFICATION = "HOURS_VERIFICATION"
    HOURS_APPROVED = "HOURS_APPROVED"
    HOURS_REJECTED = "HOURS_REJECTED"  # correction SLA: 3 days
    RESUBMITTED = "RESUBMITTED"
    HOURS_REJECTION_EXPIRED = "HOURS_REJECTION_EXPIRED"

    # Disbursement
    DISBURSEMENT_PENDING = "DISBURSEMENT_PENDING"  # processing SLA: 7 days
    DISBURSEMENT_PROCESSING = "DISBURSEMENT_PROCESSING"
    ACCOUNTING_REVIEW = "ACCOUNTING_REVIEW"
    ACCOUNTING_APPROVED = "ACCOUNTING_APPROVED"

    # Completion
    DISBURSED = "DISBURSED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class Role(Enum):
    """Actor roles as issued by the identity provider."""

    APPLICANT = "student"
    STAFF = "role_staff"
    ASSISTANT = "role_assistant"
    ADMIN = "role_admin"


SYSTEM_ACTOR = "System"

STATUS_LABELS: Dict[ApplicationStatus, str] = {
    ApplicationStatus.DRAFT: "Draft",
    ApplicationStatus.SUBMITTED: "Submitted",
    ApplicationStatus.HOURS_VERIFICATION: "Hours under review",
    ApplicationStatus.HOURS_APPROVED: "Hours approved",
    ApplicationStatus.HOURS_REJECTED: "Correction required",
    ApplicationStatus.RESUBMITTED: "Resubmitted",
    ApplicationStatus.HOURS_REJECTION_EXPIRED: "Correction overdue",
    ApplicationStatus.DISBURSEMENT_PENDING: "Awaiting disbursement",
    ApplicationStatus.DISBURSEMENT_PROCESSING: "Disbursement in progress",
    ApplicationStatus.ACCOUNTING_REVIEW: "Accounting review",
    ApplicationStatus.ACCOUNTING_APPROVED: "Awaiting transfer",
    ApplicationStatus.DISBURSED: "Disbursed",
    ApplicationStatus.CANCELLED: "Cancelled",
    ApplicationStatus.RETURNED: "Returned",
}

TERMINAL_STATUSES: FrozenSet[ApplicationStatus] = frozenset(
    {
        ApplicationStatus.DISBURSED,
        ApplicationStatus.CANCELLED,
        ApplicationStatus.RETURNED,
    }
)


@dataclass(frozen=True)
class TransitionRule:
    """One outgoing edge of the transition table."""

    target: ApplicationStatus
    allowed_roles: FrozenSet[Role]
    label: str
    requires_comment: bool = False


def _rule(
    target: ApplicationStatus,
    roles: Tuple[Role, ...],
    label: str,
    requires_comment: bool = False,
) -> TransitionRule:
    return TransitionRule(
        target=target,
        allowed_roles=frozenset(roles),
        label=label,
        requires_comment=requires_comment,
    )


_APPLICANT_ADMIN = (Role.APPLICANT, Role.ADMIN)
_STAFF_ADMIN = (Role.STAFF, Role.ADMIN)
_ADMIN = (Role.ADMIN,)

# Key: current status, value: permitted outgoing edges.
TRANSITION_RULES: Dict[ApplicationStatus, List[TransitionRule]] = {
    ApplicationStatus.DRAFT: [
        _rule(ApplicationStatus.SUBMITTED, _APPLICANT_ADMIN, "Submit application"),
    ],
    ApplicationStatus.SUBMITTED: [
        _rule(ApplicationStatus.HOURS_VERIFICATION, _STAFF_ADMIN, "Start review"),
        _rule(ApplicationStatus.DRAFT, _APPLICANT_ADMIN, "Withdraw for editing"),
    ],
    ApplicationStatus.HOURS_VERIFICATION: [
        _rule(ApplicationStatus.HOURS_APPROVED, _STAFF_ADMIN, "Approve hours", requires_comment=True),
        _rule(ApplicationStatus.HOURS_REJECTED, _STAFF_ADMIN, "Request correction", requires_comment=True),
    ],
    ApplicationStatus.HOURS_REJECTED: [
        _rule(ApplicationStatus.RESUBMITTED, _APPLICANT_ADMIN, "Resubmit"),
        # Normally reached through the SLA sweep; admins may force it.
        _rule(ApplicationStatus.HOURS_REJECTION_EXPIRED, _ADMIN, "Force expiry"),
    ],
    ApplicationStatus.RESUBMITTED: [
        _rule(ApplicationStatus.HOURS_VERIFICATION, _STAFF_ADMIN, "Review again"),
    ],
    ApplicationStatus.HOURS_REJECTION_EXPIRED: [
        _rule(ApplicationStatus.HOURS_VERIFICATION, _ADMIN, "Override and re-review", requires_comment=True),
        _rule(ApplicationStatus.CANCELLED, _ADMIN, "Cancel application", requires_comment=True),
    ],
    ApplicationStatus.HOURS_APPROVED: [
        _rule(ApplicationStatus.DISBURSEMENT_PENDING, _STAFF_ADMIN, "Send for disbursement"),
    ],
    ApplicationStatus.DISBURSEMENT_PENDING: [
        _rule(ApplicationStatus.DISBURSEMENT_PROCESSING, _ADMIN, "Start disbursement"),
        _rule(ApplicationStatus.HOURS_VERIFICATION, _ADMIN, "Send back to review", requires_comment=True),
    ],
    ApplicationStatus.DISBURSEMENT_PROCESSING: [
        _rule(ApplicationStatus.ACCOUNTING_REVIEW, _ADMIN, "Send to accounting"),
    ],
    ApplicationStatus.ACCOUNTING_REVIEW: [
        _rule(ApplicationStatus.ACCOUNTING_APPROVED, _ADMIN, "Accounting sign-off"),
        _rule(ApplicationStatus.DISBURSEMENT_PROCESSING, _ADMIN, "Accounting send-back", requires_comment=True),
    ],
    ApplicationStatus.ACCOUNTING_APPROVED: [
        _rule(ApplicationStatus.DISBURSED, _ADMIN, "Confirm transfer"),
    ],
    ApplicationStatus.DISBURSED: [
        _rule(ApplicationStatus.RETURNED, _ADMIN, "Record refund", requires_comment=True),
    ],
    ApplicationStatus.CANCELLED: [
        _rule(ApplicationStatus.DRAFT, _ADMIN, "Reopen as draft"),
    ],
    ApplicationStatus.RETURNED: [],
}

# Status deadlines (SLA offsets from the moment of entry).
DEADLINE_RULES: Dict[ApplicationStatus, timedelta] = {
    ApplicationStatus.HOURS_REJECTED: timedelta(days=3),
    ApplicationStatus.DISBURSEMENT_PENDING: timedelta(days=7),
}

MAX_REJECTIONS = 3
REJECTION_LIMIT_MARKER = "Rejection limit exceeded"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEntry:
    """One audit-trail line. Never edited once written."""

    timestamp: datetime
    from_status: Optional[ApplicationStatus]
    to_status: ApplicationStatus
    actor: str
    comment: Optional[str] = None


@dataclass
class Application:
    """In-memory representation of an award application."""

    id: str
    student_id: str
    semester: str = ""
    name: str = ""
    amount: float = 0.0
    config_id: Optional[str] = None

    # Service hours (completed hours are computed elsewhere)
    required_service_hours: float = 0.0
    completed_service_hours: float = 0.0

    # Workflow fields, written only by the engine
    status: ApplicationStatus = ApplicationStatus.DRAFT
    status_deadline: Optional[datetime] = None
    status_updated_at: datetime = field(default_factory=utcnow)
    status_updated_by: Optional[str] = None
    rejection_count: int = 0
    current_handler: Optional[str] = None
    audit_history: List[AuditEntry] = field(default_factory=list)

    version: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class ApplicationValidationError(WorkflowError):
    """Raised when application fields are malformed."""


class TransitionError(WorkflowError):
    """Raised when a transition request is refused."""

    def __init__(
        self,
        message: str,
        application_id: Optional[str] = None,
        current: Optional[ApplicationStatus] = None,
        target: Optional[ApplicationStatus] = None,
        role: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.application_id = application_id
        self.current = current
        self.target = target
        self.role = role


class InvalidTransitionError(TransitionError):
    """No edge from the current status to the requested target."""


class UnauthorizedTransitionError(TransitionError):
    """The edge exists but the acting role may not take it."""


class MissingCommentError(TransitionError):
    """The edge requires a comment and none was supplied."""


class ApplicationNotFoundError(TransitionError):
    """No application with the given id."""


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_status(value: Union[ApplicationStatus, str]) -> ApplicationStatus:
    """Accept an ApplicationStatus, its value, or its member name."""

    if isinstance(value, ApplicationStatus):
        return value
    text = str(value).strip().upper()
    if text in ApplicationStatus.__members__:
        return ApplicationStatus[text]
    try:
        return ApplicationStatus(text)
    except ValueError as e:
        raise ValueError(f"Unknown application status: {value!r}") from e


def _role_value(role: Union[Role, str, None]) -> str:
    if isinstance(role, Role):
        return role.value
    return str(role or "")


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


def get_transition_rule(
    current: ApplicationStatus, target: ApplicationStatus
) -> Optional[TransitionRule]:
    for rule in TRANSITION_RULES.get(current, []):
        if rule.target == target:
            return rule
    return None


def can_transition(
    current: ApplicationStatus,
    target: ApplicationStatus,
    role: Union[Role, str],
) -> bool:
    """Return True iff the edge exists and the role is allowed on it."""

    rule = get_transition_rule(current, target)
    if rule is None:
        return False
    role_id = _role_value(role)
    return any(r.value == role_id for r in rule.allowed_roles)


def get_next_actions(current: ApplicationStatus, role: Union[Role, str]) -> List[TransitionRule]:
    """Edges the role may take from `current`, in table order."""

    role_id = _role_value(role)
    return [
        rule
        for rule in TRANSITION_RULES.get(current, [])
        if any(r.value == role_id for r in rule.allowed_roles)
    ]


def check_transition(
    application: Application,
    target: ApplicationStatus,
    role: Union[Role, str],
    comment: Optional[str] = None,
) -> TransitionRule:
    """Validate a manual transition request.

    Raises InvalidTransitionError, UnauthorizedTransitionError or
    MissingCommentError, in that order of precedence.
    """

    role_id = _role_value(role)
    rule = get_transition_rule(application.status, target)
    if rule is None:
        raise InvalidTransitionError(
            f"No transition {application.status.value} -> {target.value}",
            application_id=application.id,
            current=application.status,
            target=target,
            role=role_id,
        )

    if not can_transition(application.status, target, role_id):
        raise UnauthorizedTransitionError(
            f"Role '{role_id}' may not move {application.status.value} -> {target.value}",
            application_id=application.id,
            current=application.status,
            target=target,
            role=role_id,
        )

    if rule.requires_comment and not (comment or "").strip():
        raise MissingCommentError(
            f"A comment is required for '{rule.label}'",
            application_id=application.id,
            current=application.status,
            target=target,
            role=role_id,
        )

    return rule


# ---------------------------------------------------------------------------
# Deadlines and strike policy
# ---------------------------------------------------------------------------


def deadline_for(target: ApplicationStatus, now: datetime) -> Optional[datetime]:
    """SLA deadline for entering `target` at `now`, or None."""

    offset = DEADLINE_RULES.get(target)
    if offset is None:
        return None
    return coerce_dt(now) + offset


def resolve_target(
    application: Application,
    requested: ApplicationStatus,
    comment: Optional[str] = None,
) -> Tuple[ApplicationStatus, Optional[str], bool]:
    """Apply the rejection limit to a requested target.

    Returns:
        (effective_target, effective_comment, strike_applied)
    """

    if requested != ApplicationStatus.HOURS_REJECTED:
        return requested, comment, False

    if application.rejection_count < MAX_REJECTIONS:
        return requested, comment, False

    message = (
        f"{REJECTION_LIMIT_MARKER}: {application.rejection_count} rejections "
        f"(limit {MAX_REJECTIONS}); application cancelled automatically."
    )
    note = (comment or "").strip()
    if note:
        message = f"{message} Reviewer note: {note}"
    return ApplicationStatus.CANCELLED, message, True


def handler_for(status: ApplicationStatus, actor: str) -> str:
    """Display label for whoever holds the application after a transition."""

    if status in TERMINAL_STATUSES:
        return "Closed"
    return actor


# ---------------------------------------------------------------------------
# Transition application
# ---------------------------------------------------------------------------


@dataclass
class TransitionResult:
    """Outcome of an accepted transition.

    `status` is the effective status, which differs from `requested` when
    the rejection limit converted a rejection into a cancellation.
    """

    application: Application
    requested: ApplicationStatus
    previous: ApplicationStatus
    audit_entry: AuditEntry
    strike_applied: bool = False

    @property
    def status(self) -> ApplicationStatus:
        return self.application.status


def apply_transition(
    application: Application,
    requested: ApplicationStatus,
    actor: str,
    now: datetime,
    comment: Optional[str] = None,
) -> TransitionResult:
    """Compute the updated record for a transition.

    The input record is not mutated. The edge must exist in the table; role
    and comment checks are the caller's job (see `check_transition`), which
    lets the SLA monitor act as the System actor.
    """

    if get_transition_rule(application.status, requested) is None:
        raise InvalidTransitionError(
            f"No transition {application.status.value} -> {requested.value}",
            application_id=application.id,
            current=application.status,
            target=requested,
        )

    now_dt = coerce_dt(now)
    effective, effective_comment, strike_applied = resolve_target(application, requested, comment)

    rejection_count = application.rejection_count
    if effective == ApplicationStatus.HOURS_REJECTED:
        rejection_count += 1
    elif (
        application.status == ApplicationStatus.CANCELLED
        and effective == ApplicationStatus.DRAFT
    ):
        rejection_count = 0

    entry = AuditEntry(
        timestamp=now_dt,
        from_status=application.status,
        to_status=effective,
        actor=actor,
        comment=(effective_comment or None),
    )

    updated = dataclasses.replace(
        application,
        status=effective,
        status_deadline=deadline_for(effective, now_dt),
        status_updated_at=now_dt,
        status_updated_by=actor,
        rejection_count=rejection_count,
        current_handler=handler_for(effective, actor),
        audit_history=[*application.audit_history, entry],
    )

    return TransitionResult(
        application=updated,
        requested=requested,
        previous=application.status,
        audit_entry=entry,
        strike_applied=strike_applied,
    )


def new_application(
    application_id: str,
    fields: Dict[str, Any],
    actor: str,
    now: datetime,
) -> Application:
    """Build a Draft application with its creation audit entry."""

    now_dt = coerce_dt(now)
    status = fields.get("status")
    if status is not None and parse_status(status) != ApplicationStatus.DRAFT:
        raise ApplicationValidationError("New applications must start in DRAFT")

    student_id = str(fields.get("student_id") or "").strip()
    if not student_id:
        raise ApplicationValidationError("student_id is required")

    try:
        amount = float(fields.get("amount") or 0)
        required = float(fields.get("required_service_hours") or 0)
        completed = float(fields.get("completed_service_hours") or 0)
    except (TypeError, ValueError) as e:
        raise ApplicationValidationError(f"Invalid numeric field: {e}") from e

    if amount < 0 or required < 0 or completed < 0:
        raise ApplicationValidationError("amount and service hours must be non-negative")

    entry = AuditEntry(
        timestamp=now_dt,
        from_status=None,
        to_status=ApplicationStatus.DRAFT,
        actor=actor,
        comment="Application created",
    )

    return Application(
        id=application_id,
        student_id=student_id,
        semester=str(fields.get("semester") or ""),
        name=str(fields.get("name") or ""),
        amount=amount,
        config_id=fields.get("config_id"),
        required_service_hours=required,
        completed_service_hours=completed,
        status=ApplicationStatus.DRAFT,
        status_deadline=None,
        status_updated_at=now_dt,
        status_updated_by=actor,
        rejection_count=0,
        current_handler=actor,
        audit_history=[entry],
        version=0,
        created_at=now_dt,
    )
