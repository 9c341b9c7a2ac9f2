"""
Periodic suspension sweep.

For every active project in an environment where automatic suspension is
enabled, the sweep checks hard caps first and then the anomaly detectors.
The first confirmed suspend-worthy violation suspends the project. One
project failing never stops the sweep.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from capguard.config import Settings, get_settings
from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import Project
from capguard.detection.base import DetectionAction
from capguard.detection.error_rate import ErrorRateDetector
from capguard.detection.patterns import PatternDetector
from capguard.detection.spike import SpikeDetector
from capguard.environment import EnvironmentPolicy
from capguard.quota.enforcement import EnforcementEngine, QuotaCheckResult
from capguard.suspension.controller import (
    SuspensionController,
    SuspensionReason,
    SuspensionType,
    TransitionResult,
    suspension_to_dict,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Summary of one sweep run."""

    success: bool = True
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int = 0
    projects_checked: int = 0
    suspensions_made: int = 0
    projects_skipped: int = 0
    """Projects exempt from automatic suspension by environment."""

    project_errors: int = 0
    suspended_projects: list[dict[str, Any]] = field(default_factory=list)
    detections: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    error: str | None = None
    """Set when the sweep could not run at all."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "projects_checked": self.projects_checked,
            "suspensions_made": self.suspensions_made,
            "projects_skipped": self.projects_skipped,
            "project_errors": self.project_errors,
            "suspended_projects": self.suspended_projects,
            "detections": self.detections,
            "errors": self.errors,
            "error": self.error,
        }


@dataclass
class ProjectOutcome:
    suspension: TransitionResult | None = None
    detections: list[dict[str, Any]] = field(default_factory=list)


def quota_reason(violation: QuotaCheckResult) -> SuspensionReason:
    return SuspensionReason(
        cap_type=violation.cap_type.value,
        current_value=violation.current_usage,
        limit_exceeded=violation.limit,
        details=(
            f"Exceeded {violation.cap_type.value}: "
            f"{violation.current_usage:g} of {violation.limit} allowed"
        ),
    )


class SweepOrchestrator:
    """Runs caps and detectors over all active projects and suspends on violation."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        enforcement: EnforcementEngine,
        controller: SuspensionController,
        environment_policy: EnvironmentPolicy | None = None,
        spike_detector: SpikeDetector | None = None,
        error_rate_detector: ErrorRateDetector | None = None,
        pattern_detector: PatternDetector | None = None,
        config: Settings | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            db_manager: Database manager for the project list
            enforcement: Hard cap checks
            controller: Applies suspensions
            environment_policy: Decides which environments are exempt
            spike_detector: Optional usage spike detector
            error_rate_detector: Optional error rate detector
            pattern_detector: Optional malicious pattern detector
            config: Settings override
        """
        s = config or get_settings()
        self._db = db_manager
        self._enforcement = enforcement
        self._controller = controller
        self._environment = environment_policy or EnvironmentPolicy(config=s)
        self._spikes = spike_detector
        self._error_rates = error_rate_detector
        self._patterns = pattern_detector
        self._max_workers = max(1, s.sweep_max_workers)
        self._cap_selection = s.sweep_cap_selection
        self._result_lock = threading.Lock()

    def _active_projects(self) -> list[tuple[str, str | None]]:
        with self._db.get_session() as session:
            rows = (
                session.query(Project.id, Project.environment)
                .filter(Project.status == "active")
                .order_by(Project.id)
                .all()
            )
        return [(row.id, row.environment) for row in rows]

    def _select_violation(self, project_id: str) -> QuotaCheckResult | None:
        if self._cap_selection == "most_exceeded":
            return self._enforcement.most_exceeded_violation(project_id)
        return self._enforcement.first_violation(project_id)

    def _suspend(self, project_id: str, reason: SuspensionReason, notes: str) -> TransitionResult:
        return self._controller.suspend(
            project_id,
            reason,
            notes=notes,
            suspension_type=SuspensionType.AUTOMATIC,
        )

    def check_project(self, project_id: str) -> ProjectOutcome:
        """
        Evaluate one project and suspend it on the first violation.

        Caps are checked first, in declared order. Detectors run only when no
        cap is exceeded; their detections are all recorded and the first one
        asking for suspension is applied.
        """
        outcome = ProjectOutcome()

        violation = self._select_violation(project_id)
        if violation is not None:
            logger.info(
                f"Project {project_id} exceeded {violation.cap_type.value} "
                f"({violation.current_usage:g}/{violation.limit})"
            )
            outcome.suspension = self._suspend(
                project_id, quota_reason(violation), "Auto-suspended by quota sweep"
            )
            return outcome

        candidates: list[tuple[SuspensionReason, str]] = []

        if self._spikes is not None:
            for spike in self._spikes.check_project_for_spikes(project_id):
                self._spikes.record_detection(spike)
                outcome.detections.append({"detector": "spike", **spike.to_dict()})
                if spike.action == DetectionAction.SUSPEND:
                    candidates.append((
                        SuspensionReason(
                            cap_type=spike.metric_type,
                            current_value=spike.current_usage,
                            limit_exceeded=round(spike.average_usage * spike.threshold_multiplier, 2),
                            details=spike.details,
                        ),
                        f"Auto-suspended due to {spike.severity.value} usage spike",
                    ))

        if self._error_rates is not None:
            high = self._error_rates.check_project_for_high_error_rate(project_id)
            if high is not None:
                self._error_rates.record_detection(high)
                outcome.detections.append({"detector": "error_rate", **high.to_dict()})
                if high.action == DetectionAction.SUSPEND:
                    candidates.append((
                        SuspensionReason(
                            cap_type="error_rate",
                            current_value=high.error_rate,
                            limit_exceeded=high.threshold_percentage,
                            details=high.details,
                        ),
                        f"Auto-suspended due to {high.severity.value} error rate",
                    ))

        if self._patterns is not None:
            for pattern in self._patterns.check_project_for_malicious_patterns(project_id):
                self._patterns.record_detection(pattern)
                outcome.detections.append({"detector": "pattern", **pattern.to_dict()})
                if pattern.action == DetectionAction.SUSPEND:
                    candidates.append((
                        PatternDetector.suspension_reason(pattern),
                        f"Auto-suspended due to {pattern.severity.value} {pattern.pattern_type.value} pattern",
                    ))

        if candidates:
            reason, notes = candidates[0]
            outcome.suspension = self._suspend(project_id, reason, notes)

        return outcome

    def _process(self, project_id: str, result: SweepResult) -> None:
        try:
            outcome = self.check_project(project_id)
        except Exception as e:
            logger.error(f"Sweep failed for project {project_id}: {e}", exc_info=True)
            with self._result_lock:
                result.projects_checked += 1
                result.project_errors += 1
                result.errors.append({"project_id": project_id, "error": str(e)})
            return

        with self._result_lock:
            result.projects_checked += 1
            result.detections.extend(outcome.detections)
            transition = outcome.suspension
            if transition is not None and transition.applied and transition.record is not None:
                result.suspensions_made += 1
                result.suspended_projects.append(suspension_to_dict(transition.record))

    def run_suspension_check(self) -> SweepResult:
        """
        Sweep every active project.

        Returns:
            SweepResult; ``success`` is False only if the project list
            could not be loaded
        """
        result = SweepResult(started_at=utcnow())
        start = time.perf_counter()

        try:
            projects = self._active_projects()
        except Exception as e:
            logger.error(f"Sweep aborted, could not load projects: {e}")
            result.success = False
            result.error = str(e)
            return self._finish(result, start)

        eligible = []
        for project_id, environment in projects:
            if self._environment.is_auto_suspend_enabled(environment):
                eligible.append(project_id)
            else:
                logger.debug(f"Skipping project {project_id} in exempt environment '{environment}'")
                result.projects_skipped += 1

        logger.info(
            f"Sweep starting: {len(eligible)} eligible, {result.projects_skipped} skipped"
        )

        if self._max_workers > 1 and len(eligible) > 1:
            with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="capguard-sweep") as pool:
                list(pool.map(lambda pid: self._process(pid, result), eligible))
        else:
            for project_id in eligible:
                self._process(project_id, result)

        return self._finish(result, start)

    def _finish(self, result: SweepResult, start: float) -> SweepResult:
        result.completed_at = utcnow()
        result.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"Sweep complete in {result.duration_ms}ms: checked={result.projects_checked} "
            f"suspended={result.suspensions_made} skipped={result.projects_skipped} "
            f"errors={result.project_errors}"
        )
        return result

    def run(self) -> dict[str, Any]:
        """Scheduler entry point."""
        return self.run_suspension_check().to_dict()
