"""
Shared pytest fixtures for the award workflow tests.

Time is always injected through a FixedClock pinned to NOW, the store is an
in-memory SQLite database, and notifications are captured by a recording
sink so tests can assert on exactly what operators would see.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Tuple

import pytest

from src.utils.date_utils import FixedClock
from src.workflow.application_store import ApplicationStore
from src.workflow.engine import StaticRoleProvider, WorkflowEngine
from src.workflow.state_machine import Application, ApplicationStatus as S, Role


NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class RecordingSink:
    """Notification sink that remembers every (message, severity)."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def notify(self, message: str, severity: str) -> None:
        self.messages.append((message, severity))

    def by_severity(self, severity: str) -> List[str]:
        return [m for m, s in self.messages if s == severity]


class FailingSink:
    """Notification sink that always raises."""

    def __init__(self) -> None:
        self.calls = 0

    def notify(self, message: str, severity: str) -> None:
        self.calls += 1
        raise RuntimeError("toast service down")


# Steps (role, target, comment) that walk a fresh DRAFT application to a status.
PATHS: Dict[S, List[Tuple[Role, S, str]]] = {
    S.DRAFT: [],
    S.SUBMITTED: [(Role.APPLICANT, S.SUBMITTED, "")],
    S.HOURS_VERIFICATION: [
        (Role.APPLICANT, S.SUBMITTED, ""),
        (Role.STAFF, S.HOURS_VERIFICATION, ""),
    ],
    S.HOURS_REJECTED: [
        (Role.APPLICANT, S.SUBMITTED, ""),
        (Role.STAFF, S.HOURS_VERIFICATION, ""),
        (Role.STAFF, S.HOURS_REJECTED, "Missing signatures"),
    ],
    S.HOURS_APPROVED: [
        (Role.APPLICANT, S.SUBMITTED, ""),
        (Role.STAFF, S.HOURS_VERIFICATION, ""),
        (Role.STAFF, S.HOURS_APPROVED, "Hours verified"),
    ],
    S.DISBURSEMENT_PENDING: [
        (Role.APPLICANT, S.SUBMITTED, ""),
        (Role.STAFF, S.HOURS_VERIFICATION, ""),
        (Role.STAFF, S.HOURS_APPROVED, "Hours verified"),
        (Role.STAFF, S.DISBURSEMENT_PENDING, ""),
    ],
}


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture
def store():
    with ApplicationStore(":memory:") as s:
        yield s


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def roles() -> StaticRoleProvider:
    return StaticRoleProvider(Role.ADMIN)


@pytest.fixture
def engine(store, roles, clock, sink) -> WorkflowEngine:
    return WorkflowEngine(store, roles=roles, clock=clock, sink=sink)


@pytest.fixture
def make_application(engine, roles) -> Callable[..., Application]:
    """
    Create an application and walk it to the requested status.

    Returns:
        A factory `make(status=S.DRAFT, **fields)` returning the stored record.
    """

    counter = {"n": 0}

    def make(status: S = S.DRAFT, **fields) -> Application:
        counter["n"] += 1
        payload = {
            "student_id": f"S{counter['n']:04d}",
            "semester": "2025-1",
            "name": "Support Award",
            "amount": 10000,
            "required_service_hours": 40,
        }
        payload.update(fields)
        app = engine.create_application(payload)
        for role, target, comment in PATHS[status]:
            roles.set_role(role)
            engine.transition(app.id, target, comment=comment or None)
        roles.set_role(Role.ADMIN)
        return engine.get_application(app.id)

    return make
