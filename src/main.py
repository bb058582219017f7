#!/usr/bin/env python3
"""CLI entry point for the award-application workflow engine.

This module drives the engine from the command line: a scripted demo on a
simulated clock, one-off SLA sweeps, the prioritized work queue, and a
foreground sweeper loop.

Usage:
    python -m src.main --demo            # Run the scripted lifecycle demo
    python -m src.main --sweep           # Run one SLA sweep now
    python -m src.main --queue           # Print the prioritized work queue
    python -m src.main --serve-sweeper   # Sweep on a timer until Ctrl+C
    python -m src.main --reset           # Remove the database
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)-8s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

DB_PATH = Path(os.getenv("WORKFLOW_DB_PATH", str(PROJECT_ROOT / "data" / "applications.db")))


def print_section(title: str) -> None:
    """Print a section header."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)
    print()


def print_state_transition(old_state: str, new_state: str, actor: str) -> None:
    """Print a state transition message."""
    print(f"  State: {old_state} -> {new_state} (by {actor})")


def print_queue(buckets: Dict, now: datetime) -> None:
    """Print priority buckets with countdowns."""
    from src.utils.date_utils import time_remaining
    from src.workflow.priority import PRIORITY_DESCRIPTIONS

    for priority, items in buckets.items():
        print(f"  {priority.value} - {PRIORITY_DESCRIPTIONS[priority]} ({len(items)})")
        for app in items:
            countdown = ""
            if app.status_deadline is not None:
                countdown = f" [{time_remaining(app.status_deadline, now).label}]"
            print(f"      {app.id}  {app.name}  {app.status.value}{countdown}")


class WorkflowDemo:
    """Scripted walk through the award workflow on a simulated clock."""

    def __init__(self, db_path: Optional[Path] = None, verbose: bool = True):
        """Initialize the demo.

        Args:
            db_path: Path to SQLite database (use :memory: for tests)
            verbose: Whether to print detailed output
        """
        from src.utils.date_utils import FixedClock
        from src.workflow.application_store import ApplicationStore
        from src.workflow.engine import StaticRoleProvider, WorkflowEngine

        self.db_path = db_path or DB_PATH
        self.verbose = verbose
        self.clock = FixedClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))
        self.roles = StaticRoleProvider()
        self.store = ApplicationStore(self.db_path)
        self.engine = WorkflowEngine(self.store, roles=self.roles, clock=self.clock)

    def close(self) -> None:
        self.store.close()

    def print(self, message: str) -> None:
        """Print a message if verbose mode is on."""
        if self.verbose:
            print(message)

    def act(self, application_id: str, role, target, comment: Optional[str] = None, actor: Optional[str] = None):
        """Perform a transition as `role` and print the effective outcome."""
        self.roles.set_role(role)
        result = self.engine.transition(application_id, target, comment=comment, actor=actor)
        if self.verbose:
            print_state_transition(
                result.previous.value, result.status.value, result.application.status_updated_by or "?"
            )
        return result

    # =========================================================================
    # Scenarios
    # =========================================================================

    def run_happy_path(self) -> str:
        """Draft through disbursement."""
        from src.workflow.state_machine import ApplicationStatus as S, Role

        if self.verbose:
            print_section("SCENARIO 1: Application disbursed")
        app = self.engine.create_application(
            {
                "student_id": "S1001",
                "semester": "2025-1",
                "name": "Indigenous Student Support Award",
                "amount": 12000,
                "required_service_hours": 48,
                "completed_service_hours": 50,
            }
        )
        self.print(f"  Created: {app.id}")
        self.act(app.id, Role.APPLICANT, S.SUBMITTED, actor="Applicant S1001")
        self.act(app.id, Role.STAFF, S.HOURS_VERIFICATION, actor="Case officer")
        self.act(app.id, Role.STAFF, S.HOURS_APPROVED, comment="Hours verified", actor="Case officer")
        result = self.act(app.id, Role.STAFF, S.DISBURSEMENT_PENDING, actor="Case officer")
        self.print(f"  Disbursement deadline: {result.application.status_deadline.isoformat()}")
        self.act(app.id, Role.ADMIN, S.DISBURSEMENT_PROCESSING, actor="Administrator")
        self.act(app.id, Role.ADMIN, S.ACCOUNTING_REVIEW, actor="Administrator")
        self.act(app.id, Role.ADMIN, S.ACCOUNTING_APPROVED, actor="Accounting")
        self.act(app.id, Role.ADMIN, S.DISBURSED, actor="Accounting")
        return app.id

    def run_strike_path(self) -> str:
        """Three rejections, then the fourth resolves to cancellation."""
        from src.workflow.state_machine import ApplicationStatus as S, Role

        if self.verbose:
            print_section("SCENARIO 2: Rejection limit")
        app = self.engine.create_application(
            {"student_id": "S1002", "semester": "2025-1", "name": "Need-based Grant", "amount": 8000,
             "required_service_hours": 30}
        )
        self.act(app.id, Role.APPLICANT, S.SUBMITTED)
        self.act(app.id, Role.STAFF, S.HOURS_VERIFICATION)
        for attempt in range(1, 4):
            self.act(app.id, Role.STAFF, S.HOURS_REJECTED, comment=f"Missing sign-off (round {attempt})")
            self.act(app.id, Role.APPLICANT, S.RESUBMITTED)
            self.act(app.id, Role.STAFF, S.HOURS_VERIFICATION)
        result = self.act(app.id, Role.STAFF, S.HOURS_REJECTED, comment="Still incomplete")
        self.print(f"  Requested {result.requested.value}, effective {result.status.value}")
        self.print(f"  Audit: {result.audit_entry.comment}")
        return app.id

    def run_expiry_path(self) -> str:
        """A correction request left past its deadline is expired by the sweep."""
        from src.workflow.state_machine import ApplicationStatus as S, Role

        if self.verbose:
            print_section("SCENARIO 3: Correction deadline expiry")
        app = self.engine.create_application(
            {"student_id": "S1003", "semester": "2025-1", "name": "Emergency Relief Grant", "amount": 5000}
        )
        self.act(app.id, Role.APPLICANT, S.SUBMITTED)
        self.act(app.id, Role.STAFF, S.HOURS_VERIFICATION)
        self.act(app.id, Role.STAFF, S.HOURS_REJECTED, comment="Attendance sheet unreadable")

        self.clock.advance(days=2, hours=20)
        report = self.engine.sweep()
        self.print(f"  +2d20h sweep: expired={report.expired_count} urgent={report.notified}")

        self.clock.advance(hours=5)
        report = self.engine.sweep()
        self.print(f"  +3d1h sweep: expired={report.expired_count} urgent={report.notified}")

        report = self.engine.sweep()
        self.print(f"  repeat sweep: expired={report.expired_count}")
        return app.id

    def run_demo(self) -> List[str]:
        ids = [self.run_happy_path(), self.run_strike_path(), self.run_expiry_path()]

        if self.verbose:
            print_section("OPERATIONS QUEUE")
        now = self.clock.now()
        print_queue(self.engine.list_by_priority(now), now)
        return ids


def run_sweep_once(db_path: Path) -> None:
    from src.workflow.application_store import ApplicationStore
    from src.workflow.engine import WorkflowEngine

    with ApplicationStore(db_path) as store:
        report = WorkflowEngine(store).sweep()
    print(
        f"Expired: {report.expired_count} {report.expired_ids}  "
        f"Urgent notification: {report.notified}  Failed: {report.failed_ids}"
    )


def show_queue(db_path: Path) -> None:
    from src.workflow.application_store import ApplicationStore
    from src.workflow.engine import WorkflowEngine

    with ApplicationStore(db_path) as store:
        engine = WorkflowEngine(store)
        now = engine.clock.now()
        print_section("OPERATIONS QUEUE")
        print_queue(engine.list_by_priority(now), now)


def serve_sweeper(db_path: Path) -> None:
    from src.workflow.application_store import ApplicationStore
    from src.workflow.engine import WorkflowEngine

    with ApplicationStore(db_path) as store:
        engine = WorkflowEngine(store)
        engine.start_sweeper()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("Stopping sweeper...")
        finally:
            engine.stop_sweeper()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Award-application workflow engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m src.main --demo              Run the scripted lifecycle demo
  python -m src.main --sweep             Run one SLA sweep against the database
  python -m src.main --queue             Print the prioritized work queue
  python -m src.main --serve-sweeper     Sweep every SWEEP_INTERVAL_SECONDS
  python -m src.main --reset             Reset database and exit
        """,
    )

    parser.add_argument("--demo", action="store_true", help="Run the scripted lifecycle demo")
    parser.add_argument("--sweep", action="store_true", help="Run one SLA sweep now")
    parser.add_argument("--queue", action="store_true", help="Print the prioritized work queue")
    parser.add_argument(
        "--serve-sweeper",
        action="store_true",
        help="Run the SLA sweeper in the foreground until interrupted",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Reset the database; exits if used alone",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress verbose output",
    )

    args = parser.parse_args()

    actions_selected = any([args.demo, args.sweep, args.queue, args.serve_sweeper])

    # Reset-only mode: allow clearing state without running anything.
    if args.reset:
        if DB_PATH.exists():
            print(f"Removing database: {DB_PATH}")
            os.remove(DB_PATH)
        else:
            print("No database to remove.")
        if not actions_selected:
            print("Database reset complete.")
            return

    # Default to demo if no action arguments were provided.
    if not actions_selected:
        args.demo = True

    if args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    try:
        if args.demo:
            demo = WorkflowDemo(db_path=DB_PATH, verbose=not args.quiet)
            try:
                demo.run_demo()
            finally:
                demo.close()
        elif args.sweep:
            run_sweep_once(DB_PATH)
        elif args.queue:
            show_queue(DB_PATH)
        elif args.serve_sweeper:
            serve_sweeper(DB_PATH)
    except Exception as e:
        logger.error("Command failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
