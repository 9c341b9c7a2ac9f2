"""
Usage spike detection.

Compares the usage total of the latest window against the project's own
average per window over a longer baseline period. A spike needs both a
large ratio to the baseline and an absolute usage floor, so near-zero
baselines do not produce noise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from capguard.caps import HardCapType
from capguard.config import Settings, get_settings
from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import Project, SpikeDetectionRecord
from capguard.detection.base import (
    DetectionAction,
    Severity,
    action_for_severity,
    summarize_records,
    window_start,
)
from capguard.detection.spike_config import SpikeConfigStore, SpikeDetectionConfig
from capguard.metering import SqlUsageMeteringService

logger = logging.getLogger(__name__)


@dataclass
class SpikeDetectionResult:
    """Outcome of one spike evaluation."""

    project_id: str
    metric_type: str
    detected: bool
    current_usage: float
    average_usage: float
    spike_multiplier: float
    """Current usage divided by the baseline average (0 when there is no baseline)."""

    threshold_multiplier: float
    severity: Severity
    action: DetectionAction
    detected_at: datetime = field(default_factory=utcnow)
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "metric_type": self.metric_type,
            "detected": self.detected,
            "current_usage": self.current_usage,
            "average_usage": self.average_usage,
            "spike_multiplier": self.spike_multiplier,
            "threshold_multiplier": self.threshold_multiplier,
            "severity": self.severity.value,
            "action": self.action.value,
            "detected_at": self.detected_at.isoformat(),
            "details": self.details,
        }


class SpikeDetector:
    """
    Flags usage far above a project's recent baseline.

    The baseline is the project's average usage per detection window over
    the baseline period, excluding the window being evaluated, so it is in
    the same unit as the current window total.

    The detector reports; it never suspends. Acting on a result is up to
    the sweep.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        metering: SqlUsageMeteringService,
        config: Settings | None = None,
        config_store: SpikeConfigStore | None = None,
    ) -> None:
        """
        Initialize the detector.

        Args:
            db_manager: Database manager for detection records and project lookups
            metering: Usage source for baselines and window totals
            config: Settings override (defaults to the global settings)
            config_store: Per-project overrides (built from ``config`` if omitted)
        """
        self._db = db_manager
        self._metering = metering
        self._config = config or get_settings()
        self._configs = config_store or SpikeConfigStore(db_manager, self._config)

    def calculate_average_usage(
        self,
        project_id: str,
        metric_type: str,
        start: datetime,
        end: datetime,
        window_ms: int | None = None,
    ) -> float:
        """
        Average usage per window of ``window_ms`` over ``[start, end]``.

        Returns 0 when the range is shorter than one window or holds no usage.
        """
        window_ms = window_ms or self._configs.defaults.window_ms
        windows = (end - start) / timedelta(milliseconds=window_ms)
        if windows <= 0:
            return 0.0
        total = self._metering.get_usage_in_window(project_id, metric_type, start, end)
        return total / windows

    def determine_severity(self, spike_multiplier: float) -> Severity:
        """Tier a usage ratio into a severity."""
        if spike_multiplier >= self._config.spike_severe_multiplier:
            return Severity.SEVERE
        if spike_multiplier >= self._config.spike_critical_multiplier:
            return Severity.CRITICAL
        return Severity.WARNING

    def detect_usage_spike(
        self,
        project_id: str,
        metric_type: str,
        current_usage: float,
        threshold_multiplier: float | None = None,
        now: datetime | None = None,
        spike_config: SpikeDetectionConfig | None = None,
    ) -> SpikeDetectionResult:
        """
        Evaluate one window total against the project's baseline.

        Args:
            project_id: Project identifier
            metric_type: Metric being evaluated
            current_usage: Usage total in the detection window
            threshold_multiplier: Ratio to the baseline that counts as a spike
            now: Evaluation time (defaults to now)
            spike_config: Effective settings (looked up for the project if omitted)

        Returns:
            SpikeDetectionResult; ``detected`` is False below the usage floor
        """
        now = now or utcnow()
        settings = spike_config or self._configs.get_effective_config(project_id)
        threshold = threshold_multiplier if threshold_multiplier is not None else settings.threshold_multiplier

        baseline_end = window_start(settings.window_ms, now)
        baseline_start = window_start(settings.baseline_period_ms, now)
        average = self.calculate_average_usage(
            project_id, metric_type, baseline_start, baseline_end, window_ms=settings.window_ms
        )
        multiplier = current_usage / average if average > 0 else 0.0

        detected = (
            average > 0
            and current_usage > average * threshold
            and current_usage >= settings.min_usage_threshold
        )
        severity = self.determine_severity(multiplier)
        action = action_for_severity(detected, severity)

        details = None
        if detected:
            details = (
                f"Usage spike detected: {current_usage:g} "
                f"({multiplier:.2f}x average of {average:.2f})"
            )

        return SpikeDetectionResult(
            project_id=project_id,
            metric_type=metric_type,
            detected=detected,
            current_usage=current_usage,
            average_usage=average,
            spike_multiplier=round(multiplier, 2),
            threshold_multiplier=threshold,
            severity=severity,
            action=action,
            detected_at=now,
            details=details,
        )

    def check_project_for_spikes(self, project_id: str, now: datetime | None = None) -> list[SpikeDetectionResult]:
        """
        Evaluate every cap type for one project.

        Current usage is the total over the project's detection window. A
        project whose spike detection is disabled yields nothing. A failing
        metric is logged and skipped.

        Returns:
            Confirmed spikes only
        """
        now = now or utcnow()
        settings = self._configs.get_effective_config(project_id)
        if not settings.enabled:
            logger.debug(f"Spike detection disabled for project {project_id}")
            return []

        start = window_start(settings.window_ms, now)
        spikes = []

        for cap in HardCapType:
            try:
                current = self._metering.get_usage_in_window(project_id, cap.value, start, now)
                result = self.detect_usage_spike(project_id, cap.value, current, now=now, spike_config=settings)
            except Exception as e:
                logger.error(f"Spike check failed for {project_id}/{cap.value}: {e}")
                continue

            if result.detected:
                logger.warning(
                    f"Spike detected for project {project_id}: {cap.value} is "
                    f"{result.spike_multiplier}x average - severity {result.severity.value}"
                )
                spikes.append(result)

        return spikes

    def check_all_projects_for_spikes(self) -> list[SpikeDetectionResult]:
        """
        Run spike detection over every active project and record what is found.

        Per-project failures are logged and do not stop the run.
        """
        with self._db.get_session() as session:
            project_ids = [
                row.id for row in session.query(Project.id).filter(Project.status == "active").all()
            ]

        logger.info(f"Checking {len(project_ids)} active projects for usage spikes")
        all_spikes = []
        for project_id in project_ids:
            try:
                spikes = self.check_project_for_spikes(project_id)
                for spike in spikes:
                    self.record_detection(spike)
                all_spikes.extend(spikes)
            except Exception as e:
                logger.error(f"Spike detection failed for project {project_id}: {e}")

        logger.info(f"Spike detection complete: {len(all_spikes)} spike(s) detected")
        return all_spikes

    def record_detection(self, result: SpikeDetectionResult) -> SpikeDetectionRecord:
        """Persist a detection result."""
        record = SpikeDetectionRecord(
            project_id=result.project_id,
            metric_type=result.metric_type,
            current_value=result.current_usage,
            average_value=result.average_usage,
            multiplier=result.spike_multiplier,
            severity=result.severity.value,
            action_taken=result.action.value,
            details=result.details,
            detected_at=result.detected_at,
        )
        with self._db.get_session() as session:
            session.add(record)
        return record

    def get_history(self, project_id: str, hours: int = 24) -> list[SpikeDetectionRecord]:
        """Recorded spikes for a project in the last ``hours``, newest first."""
        since = utcnow() - timedelta(hours=hours)
        with self._db.get_session() as session:
            return (
                session.query(SpikeDetectionRecord)
                .filter(SpikeDetectionRecord.project_id == project_id)
                .filter(SpikeDetectionRecord.detected_at >= since)
                .order_by(SpikeDetectionRecord.detected_at.desc())
                .all()
            )

    def get_statistics(self, project_id: str, hours: int = 24) -> dict[str, Any]:
        """Counts of recorded spikes by severity and action."""
        since = utcnow() - timedelta(hours=hours)
        with self._db.get_session() as session:
            return summarize_records(session, SpikeDetectionRecord, project_id, since)
