"""High error rate detection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from capguard.config import Settings, get_settings
from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import ErrorRateDetectionRecord, Project
from capguard.detection.base import (
    DetectionAction,
    Severity,
    action_for_severity,
    summarize_records,
    window_start,
)
from capguard.errors import ValidationError
from capguard.metering import SqlUsageMeteringService

logger = logging.getLogger(__name__)


@dataclass
class ErrorRateDetectionResult:
    """Outcome of one error-rate evaluation."""

    project_id: str
    detected: bool
    error_rate: float
    """Failed requests as a percentage of total requests."""

    total_requests: int
    error_count: int
    threshold_percentage: float
    severity: Severity
    action: DetectionAction
    detected_at: datetime = field(default_factory=utcnow)
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "detected": self.detected,
            "error_rate": self.error_rate,
            "total_requests": self.total_requests,
            "error_count": self.error_count,
            "threshold_percentage": self.threshold_percentage,
            "severity": self.severity.value,
            "action": self.action.value,
            "detected_at": self.detected_at.isoformat(),
            "details": self.details,
        }


class ErrorRateDetector:
    """
    Flags projects whose requests mostly fail.

    Detection needs a minimum request volume: one failure out of one
    request is never a high error rate.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        metering: SqlUsageMeteringService,
        config: Settings | None = None,
    ) -> None:
        self._db = db_manager
        self._metering = metering
        self._config = config or get_settings()

    def calculate_error_rate(self, project_id: str, start: datetime, end: datetime) -> float:
        """
        Errors divided by total requests in ``[start, end]``.

        Returns:
            Ratio in [0, 1]; 0 when there were no requests
        """
        total, errors = self._metering.get_request_stats(project_id, start, end)
        if total <= 0:
            return 0.0
        return min(errors / total, 1.0)

    def determine_severity(self, error_rate: float) -> Severity:
        """Tier an error percentage into a severity."""
        if error_rate >= self._config.error_rate_severe_percentage:
            return Severity.SEVERE
        if error_rate >= self._config.error_rate_critical_percentage:
            return Severity.CRITICAL
        return Severity.WARNING

    def detect_high_error_rate(
        self,
        project_id: str,
        total_requests: int,
        error_count: int,
        threshold_percentage: float | None = None,
    ) -> ErrorRateDetectionResult:
        """
        Evaluate request and error counts.

        Args:
            project_id: Project identifier
            total_requests: Requests in the detection window
            error_count: Failed requests in the detection window
            threshold_percentage: Error percentage that counts as high

        Returns:
            ErrorRateDetectionResult; ``detected`` is False below the request floor

        Raises:
            ValidationError: If a count is negative or errors exceed requests
        """
        if total_requests < 0 or error_count < 0:
            raise ValidationError(
                "Request and error counts must not be negative",
                field="total_requests" if total_requests < 0 else "error_count",
                value=total_requests if total_requests < 0 else error_count,
            )
        if error_count > total_requests:
            raise ValidationError(
                f"Error count {error_count} exceeds total requests {total_requests}",
                field="error_count",
                value=error_count,
            )

        threshold = (
            threshold_percentage
            if threshold_percentage is not None
            else self._config.error_rate_threshold_percentage
        )
        error_rate = (error_count / total_requests) * 100 if total_requests > 0 else 0.0

        detected = (
            total_requests >= self._config.min_requests_for_error_rate_detection
            and error_rate >= threshold
        )
        severity = self.determine_severity(error_rate)

        details = None
        if detected:
            details = (
                f"High error rate detected: {error_rate:.2f}% "
                f"({error_count} errors out of {total_requests} requests)"
            )

        return ErrorRateDetectionResult(
            project_id=project_id,
            detected=detected,
            error_rate=round(error_rate, 2),
            total_requests=total_requests,
            error_count=error_count,
            threshold_percentage=threshold,
            severity=severity,
            action=action_for_severity(detected, severity),
            details=details,
        )

    def check_project_for_high_error_rate(
        self,
        project_id: str,
        now: datetime | None = None,
    ) -> ErrorRateDetectionResult | None:
        """
        Evaluate a project's detection window.

        Returns:
            The result if a high error rate was confirmed, otherwise None
        """
        now = now or utcnow()
        start = window_start(self._config.error_rate_detection_window_ms, now)
        total, errors = self._metering.get_request_stats(project_id, start, now)

        result = self.detect_high_error_rate(project_id, total, errors)
        if not result.detected:
            return None

        logger.warning(
            f"High error rate for project {project_id}: {result.error_rate}% "
            f"of {total} requests - severity {result.severity.value}"
        )
        return result

    def check_all_projects_for_high_error_rates(self) -> list[ErrorRateDetectionResult]:
        """Run detection over every active project and record what is found."""
        with self._db.get_session() as session:
            project_ids = [
                row.id for row in session.query(Project.id).filter(Project.status == "active").all()
            ]

        logger.info(f"Checking {len(project_ids)} active projects for high error rates")
        detections = []
        for project_id in project_ids:
            try:
                result = self.check_project_for_high_error_rate(project_id)
                if result is not None:
                    self.record_detection(result)
                    detections.append(result)
            except Exception as e:
                logger.error(f"Error rate detection failed for project {project_id}: {e}")

        logger.info(f"Error rate detection complete: {len(detections)} detection(s)")
        return detections

    def record_detection(self, result: ErrorRateDetectionResult) -> ErrorRateDetectionRecord:
        """Persist a detection result."""
        record = ErrorRateDetectionRecord(
            project_id=result.project_id,
            error_rate=result.error_rate,
            total_requests=result.total_requests,
            error_count=result.error_count,
            severity=result.severity.value,
            action_taken=result.action.value,
            details=result.details,
            detected_at=result.detected_at,
        )
        with self._db.get_session() as session:
            session.add(record)
        return record

    def get_history(self, project_id: str, hours: int = 24) -> list[ErrorRateDetectionRecord]:
        """Recorded detections for a project in the last ``hours``, newest first."""
        since = utcnow() - timedelta(hours=hours)
        with self._db.get_session() as session:
            return (
                session.query(ErrorRateDetectionRecord)
                .filter(ErrorRateDetectionRecord.project_id == project_id)
                .filter(ErrorRateDetectionRecord.detected_at >= since)
                .order_by(ErrorRateDetectionRecord.detected_at.desc())
                .all()
            )

    def get_statistics(self, project_id: str, hours: int = 24) -> dict[str, Any]:
        """Counts of recorded detections by severity and action."""
        since = utcnow() - timedelta(hours=hours)
        with self._db.get_session() as session:
            return summarize_records(session, ErrorRateDetectionRecord, project_id, since)
