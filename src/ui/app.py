#!/usr/bin/env python3
"""Flask API for the award-application operations dashboard.

This module exposes the workflow engine over JSON:
- Application listing, detail (with countdown and next actions) and creation
- Role-gated status transitions
- The prioritized work queue (P0-P3)
- Manual SLA sweeps and a Server-Sent Events stream of notifications

The acting role comes from the `X-Role` header and the display name for the
audit trail from `X-User`.
"""

from __future__ import annotations

import json
import logging
import os
import queue
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request

from src.utils.date_utils import time_remaining, to_iso, utcnow
from src.workflow.application_store import ApplicationStore, ApplicationStoreError, ConcurrentModificationError
from src.workflow.engine import WorkflowEngine
from src.workflow.priority import PRIORITY_DESCRIPTIONS, priority_of
from src.workflow.state_machine import (
    STATUS_LABELS,
    Application,
    ApplicationNotFoundError,
    ApplicationValidationError,
    InvalidTransitionError,
    MissingCommentError,
    TransitionError,
    TransitionRule,
    UnauthorizedTransitionError,
    get_next_actions,
)

load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent

DB_PATH = os.getenv("WORKFLOW_DB_PATH", str(PROJECT_ROOT / "data" / "applications.db"))

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Global event queue for SSE
event_queue: queue.Queue = queue.Queue()


def emit_event(event_type: str, data: Dict[str, Any]) -> None:
    """Emit an event to all connected SSE clients."""
    event_data = {
        "type": event_type,
        "data": data,
        "timestamp": utcnow().isoformat(),
    }
    event_queue.put(event_data)


class HeaderRoleProvider:
    """Reads the acting role from the current request."""

    def current_role(self) -> str:
        return request.headers.get("X-Role", "").strip()


class QueueNotificationSink:
    """Forwards engine notifications to SSE clients."""

    def notify(self, message: str, severity: str) -> None:
        emit_event("notification", {"message": message, "severity": severity})


_engine: Optional[WorkflowEngine] = None


def get_engine() -> WorkflowEngine:
    """Lazy-load the workflow engine."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine(
            ApplicationStore(DB_PATH),
            roles=HeaderRoleProvider(),
            sink=QueueNotificationSink(),
        )
    return _engine


def set_engine(engine: Optional[WorkflowEngine]) -> None:
    """Replace the engine (tests, alternative stores)."""
    global _engine
    _engine = engine


# ============================================================================
# Serialization
# ============================================================================


def serialize_rule(rule: TransitionRule) -> Dict[str, Any]:
    return {
        "target": rule.target.value,
        "label": rule.label,
        "requires_comment": rule.requires_comment,
    }


def serialize_application(
    application: Application,
    now: datetime,
    role: Optional[str] = None,
    include_audit: bool = False,
) -> Dict[str, Any]:
    """JSON-ready view of an application at `now`."""
    priority = priority_of(application, now)
    data: Dict[str, Any] = {
        "id": application.id,
        "student_id": application.student_id,
        "semester": application.semester,
        "name": application.name,
        "amount": application.amount,
        "config_id": application.config_id,
        "required_service_hours": application.required_service_hours,
        "completed_service_hours": application.completed_service_hours,
        "status": application.status.value,
        "status_label": STATUS_LABELS[application.status],
        "status_deadline": to_iso(application.status_deadline),
        "status_updated_at": to_iso(application.status_updated_at),
        "status_updated_by": application.status_updated_by,
        "rejection_count": application.rejection_count,
        "current_handler": application.current_handler,
        "priority": priority.value if priority else None,
        "version": application.version,
    }

    if application.status_deadline is not None:
        remaining = time_remaining(application.status_deadline, now)
        data["time_remaining"] = {
            "label": remaining.label,
            "total_seconds": remaining.total_seconds,
            "is_expired": remaining.is_expired,
        }

    if role is not None:
        data["next_actions"] = [serialize_rule(r) for r in get_next_actions(application.status, role)]

    if include_audit:
        data["audit_history"] = [
            {
                "timestamp": to_iso(e.timestamp),
                "from_status": e.from_status.value if e.from_status else None,
                "to_status": e.to_status.value,
                "actor": e.actor,
                "comment": e.comment,
            }
            for e in application.audit_history
        ]
    return data


def _error(message: str, status: int, **extra: Any) -> Response:
    body = {"error": message}
    body.update({k: v for k, v in extra.items() if v is not None})
    response = jsonify(body)
    response.status_code = status
    return response


# ============================================================================
# Error handlers
# ============================================================================

TRANSITION_STATUS_CODES = {
    ApplicationNotFoundError: 404,
    InvalidTransitionError: 409,
    UnauthorizedTransitionError: 403,
    MissingCommentError: 422,
}


@app.errorhandler(TransitionError)
def handle_transition_error(e: TransitionError):
    status = TRANSITION_STATUS_CODES.get(type(e), 400)
    return _error(
        str(e),
        status,
        kind=type(e).__name__,
        current=e.current.value if e.current else None,
        target=e.target.value if e.target else None,
    )


@app.errorhandler(ApplicationValidationError)
def handle_validation_error(e: ApplicationValidationError):
    return _error(str(e), 422, kind=type(e).__name__)


@app.errorhandler(ConcurrentModificationError)
def handle_conflict(e: ConcurrentModificationError):
    return _error(str(e), 409, kind=type(e).__name__)


@app.errorhandler(ApplicationStoreError)
def handle_store_error(e: ApplicationStoreError):
    logger.error("Store failure: %s", e)
    return _error("Application store unavailable", 503, kind=type(e).__name__)


# ============================================================================
# Routes
# ============================================================================


@app.route("/api/applications")
def list_applications():
    """List all applications."""
    engine = get_engine()
    now = engine.clock.now()
    role = engine.roles.current_role()
    return jsonify(
        [serialize_application(a, now, role=role) for a in engine.store.load_all()]
    )


@app.route("/api/applications", methods=["POST"])
def create_application():
    """Create a DRAFT application."""
    engine = get_engine()
    payload = request.get_json(silent=True) or {}
    actor = request.headers.get("X-User") or "System"
    try:
        application = engine.create_application(payload, actor=actor)
    except ValueError as e:
        return _error(str(e), 422)
    emit_event("application_created", {"id": application.id})
    body = serialize_application(application, engine.clock.now(), include_audit=True)
    return jsonify(body), 201


@app.route("/api/applications/<application_id>")
def get_application(application_id: str):
    """Application detail with audit trail and next actions for the role."""
    engine = get_engine()
    application = engine.get_application(application_id)
    return jsonify(
        serialize_application(
            application,
            engine.clock.now(),
            role=engine.roles.current_role(),
            include_audit=True,
        )
    )


@app.route("/api/applications/<application_id>/transition", methods=["POST"])
def transition_application(application_id: str):
    """Request a status transition."""
    engine = get_engine()
    payload = request.get_json(silent=True) or {}
    target = payload.get("target")
    if not target:
        return _error("'target' is required", 422)

    try:
        result = engine.transition(
            application_id,
            target,
            comment=payload.get("comment"),
            actor=request.headers.get("X-User") or None,
        )
    except ValueError as e:
        return _error(str(e), 422)

    emit_event(
        "state_change",
        {
            "id": application_id,
            "old_state": result.previous.value,
            "new_state": result.status.value,
            "requested": result.requested.value,
            "strike_applied": result.strike_applied,
        },
    )

    body = serialize_application(
        result.application,
        engine.clock.now(),
        role=engine.roles.current_role(),
        include_audit=True,
    )
    body["requested_status"] = result.requested.value
    body["strike_applied"] = result.strike_applied
    return jsonify(body)


@app.route("/api/queue")
def get_queue():
    """Prioritized work queue for open applications."""
    engine = get_engine()
    now = engine.clock.now()
    buckets = engine.list_by_priority(now)
    result: List[Dict[str, Any]] = []
    for priority, items in buckets.items():
        result.append(
            {
                "priority": priority.value,
                "description": PRIORITY_DESCRIPTIONS[priority],
                "count": len(items),
                "applications": [serialize_application(a, now) for a in items],
            }
        )
    return jsonify({"generated_at": now.isoformat(), "buckets": result})


@app.route("/api/sweep", methods=["POST"])
def run_sweep():
    """Run one SLA sweep now."""
    report = get_engine().sweep()
    emit_event("sweep", {"expired": report.expired_ids, "notified": report.notified})
    return jsonify(
        {
            "expired_count": report.expired_count,
            "notified": report.notified,
            "expired_ids": report.expired_ids,
            "failed_ids": report.failed_ids,
            "urgent_ids": report.urgent_ids,
        }
    )


@app.route("/api/events")
def events():
    """Server-Sent Events endpoint for real-time updates."""
    def generate() -> Generator[str, None, None]:
        # Send initial connection event
        yield f"data: {json.dumps({'type': 'connected'})}\n\n"

        while True:
            try:
                # Wait for events with timeout
                event = event_queue.get(timeout=30)
                yield f"data: {json.dumps(event)}\n\n"
            except queue.Empty:
                # Send keepalive ping
                yield f"data: {json.dumps({'type': 'ping'})}\n\n"

    return Response(generate(), mimetype="text/event-stream")


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    with_sweeper: bool = True,
) -> None:
    """Run the Flask server, with the SLA sweeper on a background thread."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )
    engine = get_engine()
    if with_sweeper:
        engine.start_sweeper()
    try:
        app.run(host=host, port=port, debug=debug, threaded=True)
    finally:
        engine.stop_sweeper()


if __name__ == "__main__":
    run_server(debug=True)
