"""Tests for the WorkflowEngine facade: transitions, errors and concurrency."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from src.workflow.application_store import ConcurrentModificationError
from src.workflow.notifications import ALERT, INFO
from src.workflow.priority import Priority
from src.workflow.state_machine import (
    REJECTION_LIMIT_MARKER,
    ApplicationNotFoundError,
    ApplicationStatus as S,
    ApplicationValidationError,
    InvalidTransitionError,
    MissingCommentError,
    Role,
    UnauthorizedTransitionError,
)


class TestCreate:
    def test_creates_draft(self, engine, now):
        app = engine.create_application({"student_id": "S1", "name": "Award"}, actor="Registrar")

        assert app.id.startswith("APP_")
        assert app.status == S.DRAFT
        assert app.created_at == now
        stored = engine.get_application(app.id)
        assert stored.audit_history[-1].to_status == S.DRAFT
        assert stored.audit_history[-1].actor == "Registrar"

    def test_explicit_id_must_be_unique(self, engine):
        engine.create_application({"id": "APP_X", "student_id": "S1"})
        with pytest.raises(ApplicationValidationError):
            engine.create_application({"id": "APP_X", "student_id": "S2"})


class TestTransition:
    def test_applicant_submits_without_comment(self, engine, roles, make_application):
        app = make_application()
        roles.set_role(Role.APPLICANT)

        result = engine.transition(app.id, S.SUBMITTED, "")

        assert result.status == S.SUBMITTED
        assert engine.get_application(app.id).status == S.SUBMITTED

    def test_draft_to_verification_is_invalid(self, engine, roles, make_application):
        app = make_application()
        roles.set_role(Role.ADMIN)

        with pytest.raises(InvalidTransitionError):
            engine.transition(app.id, S.HOURS_VERIFICATION, "")
        assert engine.get_application(app.id).status == S.DRAFT

    def test_unknown_id(self, engine):
        with pytest.raises(ApplicationNotFoundError):
            engine.transition("APP_NOPE", S.SUBMITTED)

    def test_unauthorized_role(self, engine, roles, make_application):
        app = make_application(S.SUBMITTED)
        roles.set_role(Role.APPLICANT)

        with pytest.raises(UnauthorizedTransitionError):
            engine.transition(app.id, S.HOURS_VERIFICATION)

    def test_missing_comment(self, engine, roles, make_application):
        app = make_application(S.HOURS_VERIFICATION)
        roles.set_role(Role.STAFF)

        with pytest.raises(MissingCommentError):
            engine.transition(app.id, S.HOURS_APPROVED, "  ")
        assert len(engine.get_application(app.id).audit_history) == len(app.audit_history)

    def test_target_may_be_a_string(self, engine, make_application):
        app = make_application()
        result = engine.transition(app.id, "submitted")
        assert result.status == S.SUBMITTED

    def test_actor_defaults_to_role(self, engine, roles, make_application):
        app = make_application()
        roles.set_role(Role.APPLICANT)
        result = engine.transition(app.id, S.SUBMITTED)
        assert result.audit_entry.actor == "student"

    def test_actor_name_recorded(self, engine, make_application):
        app = make_application()
        result = engine.transition(app.id, S.SUBMITTED, actor="Ms. Chen")
        assert result.application.status_updated_by == "Ms. Chen"
        assert result.application.current_handler == "Ms. Chen"

    def test_notifies_status_change(self, engine, make_application, sink):
        app = make_application()
        sink.messages.clear()
        engine.transition(app.id, S.SUBMITTED)
        assert sink.messages == [("Status updated to: Submitted", INFO)]

    def test_notification_failure_does_not_fail_transition(
        self, store, roles, clock, failing_sink
    ):
        from src.workflow.engine import WorkflowEngine

        engine = WorkflowEngine(store, roles=roles, clock=clock, sink=failing_sink)
        app = engine.create_application({"student_id": "S1"})
        result = engine.transition(app.id, S.SUBMITTED)

        assert result.status == S.SUBMITTED
        assert failing_sink.calls == 1

    def test_deadline_after_rejection(self, engine, roles, make_application, now):
        app = make_application(S.HOURS_VERIFICATION)
        roles.set_role(Role.STAFF)

        result = engine.transition(app.id, S.HOURS_REJECTED, "Sheet unsigned")

        assert result.application.status_deadline == now + timedelta(days=3)
        assert result.application.rejection_count == 1

    def test_deadline_cleared_on_resubmit(self, engine, roles, make_application):
        app = make_application(S.HOURS_REJECTED)
        roles.set_role(Role.APPLICANT)

        result = engine.transition(app.id, S.RESUBMITTED)

        assert result.application.status_deadline is None
        assert engine.get_application(app.id).status_deadline is None

    def test_audit_tail_matches_status(self, engine, make_application):
        app = make_application(S.DISBURSEMENT_PENDING)
        assert app.audit_history[-1].to_status == app.status
        assert [e.to_status for e in app.audit_history] == [
            S.DRAFT,
            S.SUBMITTED,
            S.HOURS_VERIFICATION,
            S.HOURS_APPROVED,
            S.DISBURSEMENT_PENDING,
        ]


class TestStrikePolicy:
    def _reject_cycle(self, engine, roles, app_id, rounds):
        for i in range(rounds):
            roles.set_role(Role.STAFF)
            engine.transition(app_id, S.HOURS_REJECTED, f"Round {i + 1}")
            roles.set_role(Role.APPLICANT)
            engine.transition(app_id, S.RESUBMITTED)
            roles.set_role(Role.STAFF)
            engine.transition(app_id, S.HOURS_VERIFICATION)

    def test_fourth_rejection_cancels(self, engine, roles, make_application, sink):
        app = make_application(S.HOURS_VERIFICATION)
        self._reject_cycle(engine, roles, app.id, 3)
        assert engine.get_application(app.id).rejection_count == 3

        roles.set_role(Role.STAFF)
        result = engine.transition(app.id, S.HOURS_REJECTED, "Still missing")

        assert result.requested == S.HOURS_REJECTED
        assert result.status == S.CANCELLED
        assert result.strike_applied is True

        stored = engine.get_application(app.id)
        assert stored.status == S.CANCELLED
        assert stored.rejection_count == 3
        assert stored.status_deadline is None
        assert stored.current_handler == "Closed"
        assert REJECTION_LIMIT_MARKER in stored.audit_history[-1].comment
        assert stored.audit_history[-1].to_status == S.CANCELLED
        assert sink.by_severity(ALERT)

    def test_reopen_resets_strikes(self, engine, roles, make_application):
        app = make_application(S.HOURS_VERIFICATION)
        self._reject_cycle(engine, roles, app.id, 3)
        roles.set_role(Role.STAFF)
        engine.transition(app.id, S.HOURS_REJECTED, "Final")

        roles.set_role(Role.ADMIN)
        result = engine.transition(app.id, S.DRAFT)

        assert result.status == S.DRAFT
        assert result.application.rejection_count == 0


class TestQueries:
    def test_next_actions_follow_role(self, engine, roles, make_application):
        app = make_application(S.SUBMITTED)
        roles.set_role(Role.APPLICANT)
        assert [r.target for r in engine.next_actions(app.id)] == [S.DRAFT]
        roles.set_role(Role.STAFF)
        assert [r.target for r in engine.next_actions(app.id)] == [S.HOURS_VERIFICATION]

    def test_list_by_priority(self, engine, make_application, clock):
        rejected = make_application(S.HOURS_REJECTED)
        submitted = make_application(S.SUBMITTED)
        pending = make_application(S.DISBURSEMENT_PENDING)
        draft = make_application(S.DRAFT)

        buckets = engine.list_by_priority()
        # A fresh rejection is exactly 72h out; deadlines sort before records without one.
        assert buckets[Priority.P1] == []
        assert [a.id for a in buckets[Priority.P2]] == [rejected.id, submitted.id]
        assert {a.id for a in buckets[Priority.P3]} == {pending.id, draft.id}

        later = clock.now() + timedelta(days=2, hours=12)
        buckets = engine.list_by_priority(later)
        assert [a.id for a in buckets[Priority.P0]] == [rejected.id]


class TestConcurrency:
    def test_parallel_transitions_apply_once(self, engine, roles, make_application):
        app = make_application(S.SUBMITTED)
        roles.set_role(Role.STAFF)
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                engine.transition(app.id, S.HOURS_VERIFICATION)
                outcome = "ok"
            except InvalidTransitionError:
                outcome = "invalid"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("invalid") == 7
        stored = engine.get_application(app.id)
        assert [e.to_status for e in stored.audit_history].count(S.HOURS_VERIFICATION) == 1

    def test_sweep_and_manual_transition_do_not_interleave(self, engine, roles, make_application, clock):
        app = make_application(S.HOURS_REJECTED)
        clock.advance(days=4)
        roles.set_role(Role.APPLICANT)

        errors = []

        def resubmit():
            try:
                engine.transition(app.id, S.RESUBMITTED)
            except InvalidTransitionError as e:
                errors.append(e)

        sweeper = threading.Thread(target=engine.sweep)
        applicant = threading.Thread(target=resubmit)
        sweeper.start()
        applicant.start()
        sweeper.join()
        applicant.join()

        stored = engine.get_application(app.id)
        tail = [e.to_status for e in stored.audit_history][-2:]
        # Either order is legal; both must not be applied on top of HOURS_REJECTED.
        assert stored.status in (S.RESUBMITTED, S.HOURS_REJECTION_EXPIRED)
        if stored.status == S.RESUBMITTED:
            assert tail[-1] == S.RESUBMITTED
            assert not errors
        else:
            assert tail[-1] == S.HOURS_REJECTION_EXPIRED
            assert len(errors) == 1

    def test_external_writer_conflict_surfaces(self, engine, make_application, store, monkeypatch):
        app = make_application()
        original_get = store.get

        def get_then_race(application_id):
            loaded = original_get(application_id)
            # Another process bumps the version between our read and write.
            other = original_get(application_id)
            store.save_workflow_state(other, expected_version=other.version)
            return loaded

        monkeypatch.setattr(store, "get", get_then_race)
        with pytest.raises(ConcurrentModificationError):
            engine.transition(app.id, S.SUBMITTED)
