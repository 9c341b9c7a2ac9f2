"""
Malicious pattern detection.

Three independent heuristics, each counting qualifying security events in
a rolling window:

- SQL injection: query payloads matching known injection signatures
- Auth brute force: failed authentication attempts
- Rapid key creation: API keys created in quick succession

Every confirmed detection is recorded. Only detections whose pattern has
``suspend_on_detection`` set and whose severity is critical or severe lead
to a suspension.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func

from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import PatternDetectionRecord, Project
from capguard.detection.base import DetectionAction, Severity, summarize_records, window_start
from capguard.detection.pattern_config import (
    PatternConfigStore,
    PatternDetectionConfig,
    PatternRule,
    PatternType,
)
from capguard.events import SecurityEventLog, SecurityEventType
from capguard.suspension.controller import (
    SuspensionController,
    SuspensionReason,
    SuspensionType,
    TransitionResult,
)

logger = logging.getLogger(__name__)

MAX_EVIDENCE_ITEMS = 10

# (signature, description, severity); severity sets the match confidence
SQL_INJECTION_SIGNATURES: list[tuple[re.Pattern[str], str, Severity]] = [
    (re.compile(r"\bunion\b[\s\S]*\bselect\b", re.IGNORECASE), "UNION-based injection", Severity.SEVERE),
    (re.compile(r";\s*(drop|truncate|alter)\s+(table|database|schema)\b", re.IGNORECASE), "Stacked destructive DDL", Severity.SEVERE),
    (re.compile(r";\s*(delete\s+from|update\s+\w+\s+set|insert\s+into)\b", re.IGNORECASE), "Stacked data modification", Severity.SEVERE),
    (re.compile(r"\b(pg_sleep|sleep|benchmark|waitfor\s+delay)\s*\(?", re.IGNORECASE), "Time-based blind injection", Severity.CRITICAL),
    (re.compile(r"\b(information_schema|pg_catalog|sqlite_master)\b", re.IGNORECASE), "Schema enumeration", Severity.CRITICAL),
    (re.compile(r"'\s*(or|and)\s+'?\d+'?\s*=\s*'?\d+", re.IGNORECASE), "Tautology in quoted context", Severity.CRITICAL),
    (re.compile(r"\b(or|and)\s+1\s*=\s*1\b", re.IGNORECASE), "Boolean tautology", Severity.WARNING),
    (re.compile(r"('|\")\s*--", re.IGNORECASE), "Quote followed by comment", Severity.WARNING),
    (re.compile(r"/\*[\s\S]*?\*/", re.IGNORECASE), "Inline comment obfuscation", Severity.WARNING),
]

_SIGNATURE_CONFIDENCE = {
    Severity.SEVERE: 0.95,
    Severity.CRITICAL: 0.8,
    Severity.WARNING: 0.6,
}


@dataclass
class PatternMatchResult:
    """Outcome of checking one input against the injection signatures."""

    matched: bool
    confidence: float
    details: str | None = None
    evidence: list[str] = field(default_factory=list)


def detect_sql_injection(text: str | None) -> PatternMatchResult:
    """
    Check a string against the SQL injection signatures.

    Confidence is that of the most severe matching signature.

    Args:
        text: Query text or other user-supplied input

    Returns:
        PatternMatchResult listing every matching signature as evidence
    """
    if not text or not isinstance(text, str):
        return PatternMatchResult(matched=False, confidence=0.0)

    evidence = []
    best_confidence = 0.0
    best_description = None
    for signature, description, severity in SQL_INJECTION_SIGNATURES:
        if signature.search(text):
            evidence.append(description)
            confidence = _SIGNATURE_CONFIDENCE[severity]
            if confidence > best_confidence:
                best_confidence = confidence
                best_description = description

    return PatternMatchResult(
        matched=best_confidence > 0,
        confidence=best_confidence,
        details=best_description,
        evidence=evidence,
    )


@dataclass
class PatternDetectionResult:
    """A confirmed malicious pattern."""

    project_id: str
    pattern_type: PatternType
    severity: Severity
    occurrence_count: int
    threshold: int
    detection_window_ms: int
    description: str
    action: DetectionAction
    evidence: list[str] = field(default_factory=list)
    detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "pattern_type": self.pattern_type.value,
            "severity": self.severity.value,
            "occurrence_count": self.occurrence_count,
            "threshold": self.threshold,
            "detection_window_ms": self.detection_window_ms,
            "description": self.description,
            "action": self.action.value,
            "evidence": self.evidence,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class PatternProcessingSummary:
    """What process_pattern_detections did with a batch of results."""

    recorded: int = 0
    warnings: int = 0
    suspensions: list[TransitionResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recorded": self.recorded,
            "warnings": self.warnings,
            "suspensions": [s.to_dict() for s in self.suspensions],
            "errors": self.errors,
        }


def pattern_action(rule: PatternRule, severity: Severity) -> DetectionAction:
    """Suspend only when the rule allows it and the detection is critical or severe."""
    if rule.suspend_on_detection and severity in (Severity.CRITICAL, Severity.SEVERE):
        return DetectionAction.SUSPEND
    return DetectionAction.WARNING


def _tier(count: float, critical_at: float, severe_at: float) -> Severity:
    if count >= severe_at:
        return Severity.SEVERE
    if count >= critical_at:
        return Severity.CRITICAL
    return Severity.WARNING


def _window_minutes(window_ms: int) -> str:
    return f"{window_ms / 60000:g}"


class PatternDetector:
    """Runs the three pattern heuristics with per-project configuration."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        event_log: SecurityEventLog,
        config_store: PatternConfigStore,
        suspension_controller: SuspensionController | None = None,
    ) -> None:
        """
        Initialize the detector.

        Args:
            db_manager: Database manager for detection records and project lookups
            event_log: Source of security events
            config_store: Resolves per-project pattern configuration
            suspension_controller: Applies suspensions; without one, suspend
                actions are recorded but not applied
        """
        self._db = db_manager
        self._events = event_log
        self._configs = config_store
        self._controller = suspension_controller

    def detect_sql_injection_for_project(
        self,
        project_id: str,
        rule: PatternRule,
        now: datetime | None = None,
    ) -> PatternDetectionResult | None:
        """Count query events matching injection signatures in the window."""
        if not rule.enabled:
            return None

        now = now or utcnow()
        events = self._events.get_events(project_id, SecurityEventType.QUERY, window_start(rule.window_ms, now))
        matches = [m for m in (detect_sql_injection(e.payload) for e in events) if m.matched]

        if len(matches) < rule.threshold:
            return None

        mean_confidence = sum(m.confidence for m in matches) / len(matches)
        severity = _tier(mean_confidence, 0.7, 0.9)
        evidence = [item for m in matches for item in m.evidence][:MAX_EVIDENCE_ITEMS]

        return PatternDetectionResult(
            project_id=project_id,
            pattern_type=PatternType.SQL_INJECTION,
            severity=severity,
            occurrence_count=len(matches),
            threshold=rule.threshold,
            detection_window_ms=rule.window_ms,
            description=(
                f"Detected {len(matches)} potential SQL injection attempt(s) "
                f"in the last {_window_minutes(rule.window_ms)} minutes"
            ),
            action=pattern_action(rule, severity),
            evidence=evidence,
            detected_at=now,
        )

    def detect_auth_brute_force_for_project(
        self,
        project_id: str,
        rule: PatternRule,
        now: datetime | None = None,
    ) -> PatternDetectionResult | None:
        """Count failed authentication attempts in the window."""
        if not rule.enabled:
            return None

        now = now or utcnow()
        events = self._events.get_events(
            project_id, SecurityEventType.AUTH_FAILURE, window_start(rule.window_ms, now)
        )
        attempts = len(events)
        if attempts < rule.threshold:
            return None

        unique_ips = sorted({e.source_ip for e in events if e.source_ip})
        severity = _tier(attempts, 25, 50)

        return PatternDetectionResult(
            project_id=project_id,
            pattern_type=PatternType.AUTH_BRUTE_FORCE,
            severity=severity,
            occurrence_count=attempts,
            threshold=rule.threshold,
            detection_window_ms=rule.window_ms,
            description=(
                f"Detected {attempts} failed authentication attempt(s) from "
                f"{len(unique_ips)} unique IP(s) in the last {_window_minutes(rule.window_ms)} minutes"
            ),
            action=pattern_action(rule, severity),
            evidence=unique_ips[:MAX_EVIDENCE_ITEMS],
            detected_at=now,
        )

    def detect_rapid_key_creation_for_project(
        self,
        project_id: str,
        rule: PatternRule,
        now: datetime | None = None,
    ) -> PatternDetectionResult | None:
        """Count API keys created in the window."""
        if not rule.enabled:
            return None

        now = now or utcnow()
        keys_created = self._events.count_events(
            project_id, SecurityEventType.API_KEY_CREATED, window_start(rule.window_ms, now)
        )
        if keys_created < rule.threshold:
            return None

        severity = _tier(keys_created, 10, 20)

        return PatternDetectionResult(
            project_id=project_id,
            pattern_type=PatternType.RAPID_KEY_CREATION,
            severity=severity,
            occurrence_count=keys_created,
            threshold=rule.threshold,
            detection_window_ms=rule.window_ms,
            description=(
                f"Detected {keys_created} API key(s) created in "
                f"{_window_minutes(rule.window_ms)} minutes"
            ),
            action=pattern_action(rule, severity),
            detected_at=now,
        )

    def check_project_for_malicious_patterns(
        self,
        project_id: str,
        config: PatternDetectionConfig | None = None,
        now: datetime | None = None,
    ) -> list[PatternDetectionResult]:
        """
        Run all three heuristics for a project.

        Args:
            project_id: Project identifier
            config: Effective configuration (resolved from the store if omitted)
            now: Evaluation time

        Returns:
            Every confirmed detection, in pattern declaration order
        """
        config = config or self._configs.get_effective_config(project_id)
        if not config.enabled:
            logger.debug(f"Pattern detection disabled for project {project_id}")
            return []

        now = now or utcnow()
        checks = (
            self.detect_sql_injection_for_project(project_id, config.sql_injection, now),
            self.detect_auth_brute_force_for_project(project_id, config.auth_brute_force, now),
            self.detect_rapid_key_creation_for_project(project_id, config.rapid_key_creation, now),
        )

        detected = [result for result in checks if result is not None]
        for result in detected:
            logger.warning(
                f"{result.pattern_type.value} detected for project {project_id}: "
                f"{result.occurrence_count} occurrence(s) - severity {result.severity.value}"
            )
        return detected

    def process_pattern_detections(self, results: list[PatternDetectionResult]) -> PatternProcessingSummary:
        """
        Record every detection and act on each one independently.

        A failure on one detection is logged and does not stop the others.
        """
        summary = PatternProcessingSummary()
        for result in results:
            try:
                self.record_detection(result)
                summary.recorded += 1
            except Exception as e:
                logger.error(f"Failed to record {result.pattern_type.value} detection for {result.project_id}: {e}")
                summary.errors.append(f"{result.project_id}: {e}")
                continue

            if result.action == DetectionAction.SUSPEND:
                if self._controller is None:
                    logger.warning(
                        f"No suspension controller configured; {result.pattern_type.value} "
                        f"suspension for {result.project_id} not applied"
                    )
                    continue
                try:
                    transition = self._controller.suspend(
                        result.project_id,
                        self.suspension_reason(result),
                        notes=f"Auto-suspended due to {result.severity.value} {result.pattern_type.value} pattern",
                        suspension_type=SuspensionType.AUTOMATIC,
                    )
                    summary.suspensions.append(transition)
                except Exception as e:
                    logger.error(f"Failed to suspend {result.project_id} for {result.pattern_type.value}: {e}")
                    summary.errors.append(f"{result.project_id}: {e}")
            else:
                summary.warnings += 1
                logger.warning(f"Pattern warning for project {result.project_id}: {result.description}")

        return summary

    @staticmethod
    def suspension_reason(result: PatternDetectionResult) -> SuspensionReason:
        """Build the suspension reason for a detection."""
        return SuspensionReason(
            cap_type=result.pattern_type.value,
            current_value=result.occurrence_count,
            limit_exceeded=result.threshold,
            details=result.description,
        )

    def check_all_projects_for_malicious_patterns(self) -> list[PatternDetectionResult]:
        """Run detection over every active project and process what is found."""
        with self._db.get_session() as session:
            project_ids = [
                row.id for row in session.query(Project.id).filter(Project.status == "active").all()
            ]

        logger.info(f"Checking {len(project_ids)} active projects for malicious patterns")
        all_results = []
        for project_id in project_ids:
            try:
                results = self.check_project_for_malicious_patterns(project_id)
                self.process_pattern_detections(results)
                all_results.extend(results)
            except Exception as e:
                logger.error(f"Pattern detection failed for project {project_id}: {e}")

        logger.info(f"Pattern detection complete: {len(all_results)} pattern(s) detected")
        return all_results

    def record_detection(self, result: PatternDetectionResult) -> PatternDetectionRecord:
        """Persist a detection result."""
        record = PatternDetectionRecord(
            project_id=result.project_id,
            pattern_type=result.pattern_type.value,
            severity=result.severity.value,
            occurrence_count=result.occurrence_count,
            detection_window_ms=result.detection_window_ms,
            description=result.description,
            evidence=result.evidence or None,
            action_taken=result.action.value,
            detected_at=result.detected_at,
        )
        with self._db.get_session() as session:
            session.add(record)
        return record

    def get_history(self, project_id: str, hours: int = 24) -> list[PatternDetectionRecord]:
        """Recorded detections for a project in the last ``hours``, newest first."""
        since = utcnow() - timedelta(hours=hours)
        with self._db.get_session() as session:
            return (
                session.query(PatternDetectionRecord)
                .filter(PatternDetectionRecord.project_id == project_id)
                .filter(PatternDetectionRecord.detected_at >= since)
                .order_by(PatternDetectionRecord.detected_at.desc())
                .all()
            )

    def get_statistics(self, project_id: str, hours: int = 24) -> dict[str, Any]:
        """Counts of recorded detections by severity, action and pattern type."""
        since = utcnow() - timedelta(hours=hours)
        with self._db.get_session() as session:
            stats = summarize_records(session, PatternDetectionRecord, project_id, since)
            by_pattern = dict(
                session.query(PatternDetectionRecord.pattern_type, func.count(PatternDetectionRecord.id))
                .filter(PatternDetectionRecord.project_id == project_id)
                .filter(PatternDetectionRecord.detected_at >= since)
                .group_by(PatternDetectionRecord.pattern_type)
                .all()
            )
        stats["by_pattern"] = {p.value: by_pattern.get(p.value, 0) for p in PatternType}
        return stats
