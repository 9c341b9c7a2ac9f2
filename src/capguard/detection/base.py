"""Shared detection vocabulary."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func

from capguard.db.base import utcnow


class Severity(str, Enum):
    """How far past its threshold a detection landed."""

    WARNING = "warning"
    CRITICAL = "critical"
    SEVERE = "severe"


class DetectionAction(str, Enum):
    """What the pipeline should do with a detection."""

    NONE = "none"
    WARNING = "warning"
    SUSPEND = "suspend"


# Orders severities for "highest wins" comparisons
SEVERITY_RANK = {
    Severity.WARNING: 1,
    Severity.CRITICAL: 2,
    Severity.SEVERE: 3,
}


def action_for_severity(detected: bool, severity: Severity) -> DetectionAction:
    """
    Map a threshold detection to an action.

    Only severe detections suspend; warning and critical ones are reported.
    """
    if not detected:
        return DetectionAction.NONE
    if severity == Severity.SEVERE:
        return DetectionAction.SUSPEND
    return DetectionAction.WARNING


def window_start(window_ms: int, now: datetime | None = None) -> datetime:
    """Start of a rolling window ending at ``now``."""
    return (now or utcnow()) - timedelta(milliseconds=window_ms)


def summarize_records(session: Any, model: Any, project_id: str, since: datetime) -> dict[str, Any]:
    """
    Count detection rows for a project by severity and by action.

    Args:
        session: Open database session
        model: Detection record model with severity, action_taken and detected_at columns
        project_id: Project identifier
        since: Lower bound on detected_at

    Returns:
        Dict with total, by_severity, by_action and last_detected_at
    """
    base = (
        session.query(model)
        .filter(model.project_id == project_id)
        .filter(model.detected_at >= since)
    )

    by_severity = dict(
        base.with_entities(model.severity, func.count(model.id)).group_by(model.severity).all()
    )
    by_action = dict(
        base.with_entities(model.action_taken, func.count(model.id)).group_by(model.action_taken).all()
    )
    last = base.with_entities(func.max(model.detected_at)).scalar()

    return {
        "project_id": project_id,
        "total": sum(by_severity.values()),
        "by_severity": {s.value: by_severity.get(s.value, 0) for s in Severity},
        "by_action": {a.value: by_action.get(a.value, 0) for a in DetectionAction},
        "last_detected_at": last.isoformat() if last else None,
    }
