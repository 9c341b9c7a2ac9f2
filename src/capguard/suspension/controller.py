"""
Suspension state machine.

A project is SUSPENDED while it has an unresolved suspension row and
ACTIVE otherwise. Every transition writes the suspension row, a history
entry and the project status in one transaction. Cache invalidation,
audit and notification run afterwards through the side-effect queue and
never undo a committed transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from capguard.cache import SnapshotCache, create_snapshot_cache
from capguard.config import Settings, get_settings
from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import Project, Suspension, SuspensionHistory
from capguard.environment import EnvironmentPolicy
from capguard.errors import NotFoundError, TransientStoreError, ValidationError
from capguard.notifications.dispatcher import (
    AuditEntry,
    AuditLogger,
    LoggingAuditLogger,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    resolve_recipients,
)
from capguard.notifications.outbox import SideEffectQueue

logger = logging.getLogger(__name__)

MAX_DETAILS_LENGTH = 500
MAX_NOTES_LENGTH = 1000


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class SuspensionType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class HistoryAction(str, Enum):
    SUSPENDED = "suspended"
    UNSUSPENDED = "unsuspended"


class TransitionOutcome(str, Enum):
    """Why a transition was or was not applied."""

    APPLIED = "applied"
    ALREADY_SUSPENDED = "already_suspended"
    NOT_SUSPENDED = "not_suspended"
    ENVIRONMENT_EXEMPT = "environment_exempt"
    CONCURRENT_TRANSITION = "concurrent_transition"


class SuspensionReason(BaseModel):
    """Why a project was suspended."""

    model_config = ConfigDict(extra="forbid")

    cap_type: str = Field(..., min_length=1, max_length=50, description="Cap, metric or pattern that triggered")
    current_value: float = Field(..., ge=0, description="Observed value")
    limit_exceeded: float = Field(..., ge=0, description="Limit that was crossed")
    details: str | None = Field(default=None, max_length=MAX_DETAILS_LENGTH)

    @classmethod
    def coerce(cls, value: SuspensionReason | dict[str, Any]) -> SuspensionReason:
        """
        Accept a reason model or raw dict.

        Raises:
            ValidationError: If a raw dict is malformed
        """
        if isinstance(value, cls):
            return value
        try:
            return cls.model_validate(value)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise ValidationError(
                f"Invalid suspension reason: {field}: {first['msg']}",
                field=field,
                value=first.get("input"),
            ) from None


@dataclass
class TransitionResult:
    """Outcome of a suspend or unsuspend call."""

    project_id: str
    action: HistoryAction
    applied: bool
    outcome: TransitionOutcome
    record: Suspension | None = None
    """The suspension row created, closed, or already in place."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "action": self.action.value,
            "applied": self.applied,
            "outcome": self.outcome.value,
            "record": suspension_to_dict(self.record) if self.record else None,
        }


def suspension_to_dict(record: Suspension) -> dict[str, Any]:
    return {
        "id": record.id,
        "project_id": record.project_id,
        "reason": record.reason,
        "cap_exceeded": record.cap_exceeded,
        "suspended_at": record.suspended_at.isoformat() if record.suspended_at else None,
        "resolved_at": record.resolved_at.isoformat() if record.resolved_at else None,
        "notes": record.notes,
        "suspension_type": record.suspension_type,
    }


def _validate_notes(notes: str | None) -> str | None:
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(
            f"Notes must not exceed {MAX_NOTES_LENGTH} characters",
            field="notes",
            value=len(notes),
        )
    return notes


def _active_suspension(session: Session, project_id: str) -> Suspension | None:
    return (
        session.query(Suspension)
        .filter(Suspension.project_id == project_id)
        .filter(Suspension.resolved_at.is_(None))
        .first()
    )


class SuspensionController:
    """Applies suspend and unsuspend transitions and answers status queries."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        side_effects: SideEffectQueue | None = None,
        cache: SnapshotCache | None = None,
        audit_logger: AuditLogger | None = None,
        notifier: NotificationDispatcher | None = None,
        environment_policy: EnvironmentPolicy | None = None,
        config: Settings | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            db_manager: Database manager owning the transactions
            side_effects: Queue for post-commit work
            cache: Project snapshot cache to invalidate
            audit_logger: Receives one entry per applied transition
            notifier: Sends stakeholder notices
            environment_policy: Gate for automatic suspensions
            config: Settings override
        """
        s = config or get_settings()
        self._db = db_manager
        self._side_effects = side_effects or SideEffectQueue(
            max_workers=s.side_effect_workers,
            max_attempts=s.side_effect_max_attempts,
            base_delay=s.side_effect_retry_base_delay,
            max_delay=s.side_effect_retry_max_delay,
        )
        self._cache = cache or create_snapshot_cache(config=s)
        self._audit = audit_logger or LoggingAuditLogger()
        self._notifier = notifier or LoggingNotificationDispatcher()
        self._environment = environment_policy or EnvironmentPolicy(config=s)
        self._admin_emails = list(s.admin_notification_emails)

    @property
    def side_effects(self) -> SideEffectQueue:
        return self._side_effects

    def suspend(
        self,
        project_id: str,
        reason: SuspensionReason | dict[str, Any],
        notes: str | None = None,
        suspension_type: SuspensionType | str = SuspensionType.MANUAL,
        actor: str = "system",
    ) -> TransitionResult:
        """
        Suspend a project.

        A project that is already suspended is left as it is. Automatic
        suspensions are refused for environments exempt from them.

        Args:
            project_id: Project to suspend
            reason: What triggered the suspension
            notes: Free-form operator notes
            suspension_type: Manual or automatic
            actor: Who requested the transition, for the audit trail

        Returns:
            TransitionResult; ``applied`` is False for no-ops

        Raises:
            ValidationError: If the reason, notes or type are invalid
            NotFoundError: If the project does not exist
            TransientStoreError: If the transaction fails; nothing is written
        """
        reason = SuspensionReason.coerce(reason)
        notes = _validate_notes(notes)
        try:
            stype = SuspensionType(suspension_type)
        except ValueError:
            raise ValidationError(
                f"Invalid suspension type '{suspension_type}'",
                field="suspension_type",
                value=suspension_type,
            ) from None

        reason_data = reason.model_dump()
        try:
            with self._db.get_session() as session:
                # Row lock serializes concurrent transitions for the same project
                project = (
                    session.query(Project)
                    .filter(Project.id == project_id)
                    .with_for_update()
                    .first()
                )
                if project is None:
                    raise NotFoundError(project_id)

                if stype == SuspensionType.AUTOMATIC and not self._environment.is_auto_suspend_enabled(
                    project.environment
                ):
                    logger.info(
                        f"Skipping automatic suspension of {project_id}: "
                        f"environment '{self._environment.resolve(project.environment)}' is exempt"
                    )
                    return TransitionResult(
                        project_id, HistoryAction.SUSPENDED, False, TransitionOutcome.ENVIRONMENT_EXEMPT
                    )

                existing = _active_suspension(session, project_id)
                if existing is not None:
                    logger.info(f"Project {project_id} is already suspended (suspension {existing.id})")
                    return TransitionResult(
                        project_id, HistoryAction.SUSPENDED, False, TransitionOutcome.ALREADY_SUSPENDED, existing
                    )

                now = utcnow()
                record = Suspension(
                    project_id=project_id,
                    reason=reason_data,
                    cap_exceeded=reason.cap_type,
                    suspended_at=now,
                    notes=notes,
                    suspension_type=stype.value,
                )
                session.add(record)
                session.add(
                    SuspensionHistory(
                        project_id=project_id,
                        action=HistoryAction.SUSPENDED.value,
                        reason=reason_data,
                        notes=notes,
                        occurred_at=now,
                    )
                )
                project.status = ProjectStatus.SUSPENDED.value
                session.flush()
        except IntegrityError:
            logger.warning(f"Concurrent suspension of project {project_id}; keeping the existing one")
            return TransitionResult(
                project_id,
                HistoryAction.SUSPENDED,
                False,
                TransitionOutcome.CONCURRENT_TRANSITION,
                self.get_active_suspension(project_id),
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to suspend project {project_id}: {e}")
            raise TransientStoreError(f"Failed to suspend project {project_id}") from e

        logger.warning(
            f"Suspended project {project_id} ({stype.value}) for {reason.cap_type}: "
            f"{reason.current_value:g} > {reason.limit_exceeded:g}"
        )
        self._after_transition(
            project,
            HistoryAction.SUSPENDED,
            actor,
            details={"suspension_id": record.id, "suspension_type": stype.value, "reason": reason_data, "notes": notes},
            notify=lambda recipients: self._notifier.send_suspension_notice(project, reason_data, recipients),
        )
        return TransitionResult(project_id, HistoryAction.SUSPENDED, True, TransitionOutcome.APPLIED, record)

    def unsuspend(self, project_id: str, notes: str | None = None, actor: str = "system") -> TransitionResult:
        """
        Lift a project's suspension.

        A project that is not suspended is left as it is.

        Raises:
            ValidationError: If notes are too long
            NotFoundError: If the project does not exist
            TransientStoreError: If the transaction fails; nothing is written
        """
        notes = _validate_notes(notes)
        try:
            with self._db.get_session() as session:
                project = (
                    session.query(Project)
                    .filter(Project.id == project_id)
                    .with_for_update()
                    .first()
                )
                if project is None:
                    raise NotFoundError(project_id)

                record = _active_suspension(session, project_id)
                if record is None:
                    logger.info(f"Project {project_id} is not suspended; nothing to lift")
                    return TransitionResult(
                        project_id, HistoryAction.UNSUSPENDED, False, TransitionOutcome.NOT_SUSPENDED
                    )

                now = utcnow()
                record.resolved_at = now
                if notes:
                    record.notes = f"{record.notes}\n{notes}" if record.notes else notes
                session.add(
                    SuspensionHistory(
                        project_id=project_id,
                        action=HistoryAction.UNSUSPENDED.value,
                        reason=record.reason,
                        notes=notes,
                        occurred_at=now,
                    )
                )
                project.status = ProjectStatus.ACTIVE.value
                session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to unsuspend project {project_id}: {e}")
            raise TransientStoreError(f"Failed to unsuspend project {project_id}") from e

        logger.info(f"Unsuspended project {project_id} (suspension {record.id})")
        self._after_transition(
            project,
            HistoryAction.UNSUSPENDED,
            actor,
            details={"suspension_id": record.id, "notes": notes},
            notify=lambda recipients: self._notifier.send_unsuspension_notice(project, notes, recipients),
        )
        return TransitionResult(project_id, HistoryAction.UNSUSPENDED, True, TransitionOutcome.APPLIED, record)

    def _after_transition(
        self,
        project: Project,
        action: HistoryAction,
        actor: str,
        details: dict[str, Any],
        notify: Any,
    ) -> None:
        project_id = project.id
        entry = AuditEntry(action=f"project.{action.value}", project_id=project_id, actor=actor, details=details)
        recipients = resolve_recipients(project, self._admin_emails)

        self._enqueue(f"cache:{project_id}", lambda: self._cache.invalidate(project_id))
        self._enqueue(f"audit:{project_id}", lambda: self._audit.append(entry))
        self._enqueue(f"notify:{project_id}", lambda: notify(recipients))

    def _enqueue(self, name: str, func: Any) -> None:
        try:
            self._side_effects.enqueue(name, func)
        except Exception as e:
            logger.error(f"Could not queue side effect '{name}': {e}")

    def get_active_suspension(self, project_id: str) -> Suspension | None:
        """The unresolved suspension for a project, if any."""
        with self._db.get_session() as session:
            return _active_suspension(session, project_id)

    def is_suspended(self, project_id: str) -> bool:
        return self.get_active_suspension(project_id) is not None

    def get_status(self, project_id: str) -> dict[str, Any]:
        """
        Current state of a project.

        Raises:
            NotFoundError: If the project does not exist
        """
        with self._db.get_session() as session:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFoundError(project_id)
            active = _active_suspension(session, project_id)
            return {
                "project_id": project_id,
                "status": project.status,
                "suspended": active is not None,
                "suspension": suspension_to_dict(active) if active else None,
            }

    def get_all_active(self) -> list[Suspension]:
        """Every unresolved suspension, newest first."""
        with self._db.get_session() as session:
            return (
                session.query(Suspension)
                .filter(Suspension.resolved_at.is_(None))
                .order_by(Suspension.suspended_at.desc())
                .all()
            )

    def get_history(self, project_id: str, limit: int = 50) -> list[SuspensionHistory]:
        """A project's transition history, newest first."""
        with self._db.get_session() as session:
            return (
                session.query(SuspensionHistory)
                .filter(SuspensionHistory.project_id == project_id)
                .order_by(SuspensionHistory.occurred_at.desc(), SuspensionHistory.id.desc())
                .limit(limit)
                .all()
            )

    def get_summary(self, hours: int = 24) -> dict[str, Any]:
        """Counts of current suspensions and recent transitions."""
        since = utcnow() - timedelta(hours=hours)
        with self._db.get_session() as session:
            active = session.query(Suspension).filter(Suspension.resolved_at.is_(None))
            by_type = dict(
                active.with_entities(Suspension.suspension_type, func.count(Suspension.id))
                .group_by(Suspension.suspension_type)
                .all()
            )
            by_cause = dict(
                active.with_entities(Suspension.cap_exceeded, func.count(Suspension.id))
                .group_by(Suspension.cap_exceeded)
                .all()
            )
            recent = dict(
                session.query(SuspensionHistory.action, func.count(SuspensionHistory.id))
                .filter(SuspensionHistory.occurred_at >= since)
                .group_by(SuspensionHistory.action)
                .all()
            )

        return {
            "active_suspensions": sum(by_type.values()),
            "by_type": {t.value: by_type.get(t.value, 0) for t in SuspensionType},
            "by_cause": by_cause,
            "period_hours": hours,
            "suspended_in_period": recent.get(HistoryAction.SUSPENDED.value, 0),
            "unsuspended_in_period": recent.get(HistoryAction.UNSUSPENDED.value, 0),
        }
