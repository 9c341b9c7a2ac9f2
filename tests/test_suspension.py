"""Tests for the suspension state machine."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from capguard.cache import InMemorySnapshotCache
from capguard.db.manager import DatabaseManager
from capguard.db.models import Project, Suspension, SuspensionHistory
from capguard.errors import NotFoundError, TransientStoreError, ValidationError
from capguard.notifications import SideEffectQueue
from capguard.suspension import (
    HistoryAction,
    SuspensionController,
    SuspensionReason,
    SuspensionType,
    TransitionOutcome,
)

REASON = {
    "cap_type": "db_queries_per_day",
    "current_value": 10_001,
    "limit_exceeded": 10_000,
    "details": "Exceeded db_queries_per_day",
}


def _project_status(db_manager: DatabaseManager, project_id: str) -> str:
    with db_manager.get_session() as session:
        return session.get(Project, project_id).status


def _unresolved_count(db_manager: DatabaseManager, project_id: str) -> int:
    with db_manager.get_session() as session:
        return (
            session.query(Suspension)
            .filter(Suspension.project_id == project_id)
            .filter(Suspension.resolved_at.is_(None))
            .count()
        )


class TestSuspensionReason:
    """Tests for reason validation."""

    def test_coerce_dict(self) -> None:
        reason = SuspensionReason.coerce(REASON)
        assert reason.cap_type == "db_queries_per_day"
        assert reason.current_value == 10_001

    @pytest.mark.parametrize(
        "data",
        [
            {**REASON, "cap_type": ""},
            {**REASON, "current_value": -1},
            {**REASON, "details": "x" * 501},
            {"cap_type": "db_queries_per_day"},
            {**REASON, "extra": True},
        ],
    )
    def test_coerce_rejects_malformed(self, data: dict) -> None:
        with pytest.raises(ValidationError):
            SuspensionReason.coerce(data)


class TestSuspend:
    """Tests for SuspensionController.suspend."""

    def test_suspend_applies_transition(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        make_project,
    ) -> None:
        """Test that suspension writes the row, history and status together."""
        make_project("p1")

        result = controller.suspend("p1", REASON, notes="over quota")

        assert result.applied is True
        assert result.outcome == TransitionOutcome.APPLIED
        assert result.record.cap_exceeded == "db_queries_per_day"
        assert result.record.suspension_type == "manual"
        assert _project_status(db_manager, "p1") == "suspended"
        assert controller.is_suspended("p1") is True

        history = controller.get_history("p1")
        assert [h.action for h in history] == ["suspended"]
        assert history[0].reason["limit_exceeded"] == 10_000

    def test_suspend_is_idempotent(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        make_project,
    ) -> None:
        make_project("p1")
        first = controller.suspend("p1", REASON)

        second = controller.suspend("p1", {**REASON, "cap_type": "realtime_connections"})

        assert second.applied is False
        assert second.outcome == TransitionOutcome.ALREADY_SUSPENDED
        assert second.record.id == first.record.id
        assert _unresolved_count(db_manager, "p1") == 1
        assert len(controller.get_history("p1")) == 1

    def test_unknown_project(self, controller: SuspensionController) -> None:
        with pytest.raises(NotFoundError):
            controller.suspend("missing", REASON)

    def test_invalid_input_writes_nothing(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        make_project,
    ) -> None:
        make_project("p1")

        with pytest.raises(ValidationError):
            controller.suspend("p1", {**REASON, "limit_exceeded": -5})
        with pytest.raises(ValidationError):
            controller.suspend("p1", REASON, notes="n" * 1001)
        with pytest.raises(ValidationError):
            controller.suspend("p1", REASON, suspension_type="temporary")

        assert _project_status(db_manager, "p1") == "active"
        assert controller.get_history("p1") == []

    def test_store_failure_rolls_back(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        audit_logger: MagicMock,
        make_project,
    ) -> None:
        """Test that a failing write surfaces as TransientStoreError and leaves no trace."""
        make_project("p1")

        with patch(
            "capguard.suspension.controller._active_suspension",
            side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
        ):
            with pytest.raises(TransientStoreError):
                controller.suspend("p1", REASON)

        assert _project_status(db_manager, "p1") == "active"
        assert _unresolved_count(db_manager, "p1") == 0
        audit_logger.append.assert_not_called()

    def test_concurrent_insert_is_reported_not_duplicated(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        make_project,
    ) -> None:
        """Test that the unique index stops a second unresolved suspension."""
        import capguard.suspension.controller as controller_module

        make_project("p1")
        controller.suspend("p1", REASON)

        real_lookup = controller_module._active_suspension
        calls = []

        # Simulate a writer that missed the existing row on its first read
        def stale_lookup(session, project_id):
            calls.append(project_id)
            return None if len(calls) == 1 else real_lookup(session, project_id)

        with patch("capguard.suspension.controller._active_suspension", side_effect=stale_lookup):
            result = controller.suspend("p1", REASON)

        assert result.applied is False
        assert result.outcome == TransitionOutcome.CONCURRENT_TRANSITION
        assert result.record is not None
        assert _unresolved_count(db_manager, "p1") == 1

    def test_automatic_suspension_skips_exempt_environment(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        make_project,
    ) -> None:
        make_project("p-staging", environment="staging")

        auto = controller.suspend("p-staging", REASON, suspension_type=SuspensionType.AUTOMATIC)
        assert auto.applied is False
        assert auto.outcome == TransitionOutcome.ENVIRONMENT_EXEMPT
        assert _project_status(db_manager, "p-staging") == "active"

        manual = controller.suspend("p-staging", REASON, suspension_type="manual")
        assert manual.applied is True

    def test_side_effects_after_commit(
        self,
        controller: SuspensionController,
        cache: InMemorySnapshotCache,
        audit_logger: MagicMock,
        notifier: MagicMock,
        make_project,
    ) -> None:
        make_project("p1", owner_email="owner@example.com")
        cache.set("p1", {"status": "active"})

        controller.suspend("p1", REASON, actor="admin@example.com")

        assert cache.get("p1") is None
        entry = audit_logger.append.call_args.args[0]
        assert entry.action == "project.suspended"
        assert entry.actor == "admin@example.com"
        project, reason, recipients = notifier.send_suspension_notice.call_args.args
        assert project.id == "p1"
        assert reason["cap_type"] == "db_queries_per_day"
        assert recipients == ["owner@example.com", "ops@example.com"]

    def test_side_effect_failure_does_not_undo(
        self,
        controller: SuspensionController,
        side_effects: SideEffectQueue,
        audit_logger: MagicMock,
        make_project,
    ) -> None:
        """Test that a failing audit sink is retried then dead-lettered, and the suspension stands."""
        make_project("p1")
        audit_logger.append.side_effect = RuntimeError("audit store down")

        result = controller.suspend("p1", REASON)

        assert result.applied is True
        assert controller.is_suspended("p1") is True
        assert audit_logger.append.call_count == 3
        assert [d.name for d in side_effects.dead_letters] == ["audit:p1"]


class TestUnsuspend:
    """Tests for SuspensionController.unsuspend."""

    def test_unsuspend(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        notifier: MagicMock,
        make_project,
    ) -> None:
        make_project("p1")
        controller.suspend("p1", REASON, notes="first")

        result = controller.unsuspend("p1", notes="paid invoice")

        assert result.applied is True
        assert result.record.resolved_at is not None
        assert result.record.notes == "first\npaid invoice"
        assert _project_status(db_manager, "p1") == "active"
        assert controller.is_suspended("p1") is False
        assert [h.action for h in controller.get_history("p1")] == ["unsuspended", "suspended"]
        notifier.send_unsuspension_notice.assert_called_once()

    def test_unsuspend_when_not_suspended(self, controller: SuspensionController, make_project) -> None:
        make_project("p1")

        result = controller.unsuspend("p1")

        assert result.applied is False
        assert result.outcome == TransitionOutcome.NOT_SUSPENDED
        assert controller.get_history("p1") == []

    def test_unsuspend_unknown_project(self, controller: SuspensionController) -> None:
        with pytest.raises(NotFoundError):
            controller.unsuspend("missing")

    def test_resuspend_after_unsuspend(
        self,
        controller: SuspensionController,
        db_manager: DatabaseManager,
        make_project,
    ) -> None:
        make_project("p1")
        controller.suspend("p1", REASON)
        controller.unsuspend("p1")

        again = controller.suspend("p1", REASON)

        assert again.applied is True
        assert _unresolved_count(db_manager, "p1") == 1
        with db_manager.get_session() as session:
            assert session.query(SuspensionHistory).filter_by(project_id="p1").count() == 3


class TestQueries:
    """Tests for status and summary reads."""

    def test_get_status(self, controller: SuspensionController, make_project) -> None:
        make_project("p1")
        assert controller.get_status("p1")["suspended"] is False

        controller.suspend("p1", REASON)
        status = controller.get_status("p1")

        assert status["status"] == "suspended"
        assert status["suspension"]["cap_exceeded"] == "db_queries_per_day"

    def test_get_status_unknown(self, controller: SuspensionController) -> None:
        with pytest.raises(NotFoundError):
            controller.get_status("missing")

    def test_summary(self, controller: SuspensionController, make_project) -> None:
        for pid in ("p1", "p2", "p3"):
            make_project(pid)
        controller.suspend("p1", REASON)
        controller.suspend("p2", {**REASON, "cap_type": "error_rate"}, suspension_type="automatic")
        controller.suspend("p3", REASON)
        controller.unsuspend("p3")

        summary = controller.get_summary(hours=1)

        assert summary["active_suspensions"] == 2
        assert summary["by_type"] == {"manual": 1, "automatic": 1}
        assert summary["by_cause"] == {"db_queries_per_day": 1, "error_rate": 1}
        assert summary["suspended_in_period"] == 3
        assert summary["unsuspended_in_period"] == 1
        assert {s.project_id for s in controller.get_all_active()} == {"p1", "p2"}

    def test_history_limit(self, controller: SuspensionController, make_project) -> None:
        make_project("p1")
        for _ in range(3):
            controller.suspend("p1", REASON)
            controller.unsuspend("p1")

        history = controller.get_history("p1", limit=2)

        assert len(history) == 2
        assert history[0].action == HistoryAction.UNSUSPENDED.value
