"""Retention pruning for detection results and raw inputs."""

import logging
from datetime import timedelta
from typing import Any

from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import (
    ErrorMetric,
    ErrorRateDetectionRecord,
    PatternDetectionRecord,
    SecurityEvent,
    SpikeDetectionRecord,
    UsageMetric,
)

logger = logging.getLogger(__name__)


class DataPruner:
    """
    Deletes detection results and raw metrics past the retention period.

    Runs as a scheduled job to keep the append-only tables bounded.
    Suspension rows and suspension history are never pruned.
    """

    def __init__(self, db_manager: DatabaseManager, retention_days: int = 90) -> None:
        """
        Initialize data pruner.

        Args:
            db_manager: Database manager instance
            retention_days: Days to retain rows
        """
        self._db = db_manager
        self._retention_days = retention_days

    def _prune(self, model: Any, column: Any, label: str) -> int:
        cutoff = utcnow() - timedelta(days=self._retention_days)
        try:
            with self._db.get_session() as session:
                count = (
                    session.query(model)
                    .filter(column < cutoff)
                    .delete(synchronize_session=False)
                )
        except Exception as e:
            logger.error(f"Failed to prune {label}: {e}")
            return 0

        if count > 0:
            logger.info(f"Pruned {count} {label} older than {self._retention_days} days")
        else:
            logger.debug(f"No {label} to prune")
        return count

    def prune_detections(self) -> int:
        """
        Delete detection results older than the retention period.

        Returns:
            Number of deleted records
        """
        return (
            self._prune(SpikeDetectionRecord, SpikeDetectionRecord.detected_at, "spike detections")
            + self._prune(ErrorRateDetectionRecord, ErrorRateDetectionRecord.detected_at, "error rate detections")
            + self._prune(PatternDetectionRecord, PatternDetectionRecord.detected_at, "pattern detections")
        )

    def prune_inputs(self) -> int:
        """Delete usage samples, request counters and security events older than the retention period."""
        return (
            self._prune(UsageMetric, UsageMetric.recorded_at, "usage samples")
            + self._prune(ErrorMetric, ErrorMetric.recorded_at, "request counters")
            + self._prune(SecurityEvent, SecurityEvent.occurred_at, "security events")
        )

    def run_all(self) -> dict[str, int]:
        """
        Run all pruning tasks.

        Returns:
            Dict with counts for each pruning operation
        """
        return {
            "detections_pruned": self.prune_detections(),
            "inputs_pruned": self.prune_inputs(),
        }
