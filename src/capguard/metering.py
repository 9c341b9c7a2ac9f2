"""
Usage metering.

The enforcement and detection code only consumes usage numbers through the
UsageMeteringService contract. SqlUsageMeteringService is the default
implementation backed by the usage_metrics and error_metrics tables.
"""

import logging
from datetime import datetime, time
from typing import Protocol

from sqlalchemy import func

from capguard.caps import GAUGE_CAPS, HardCapType
from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import ErrorMetric, UsageMetric

logger = logging.getLogger(__name__)


class UsageMeteringService(Protocol):
    """Source of current usage counters per project and metric."""

    def get_current_usage(self, project_id: str, metric_type: str) -> float:
        ...

    def record_usage(self, project_id: str, metric_type: str, amount: float = 1) -> None:
        ...


class SqlUsageMeteringService:
    """
    Metering backed by the usage_metrics and error_metrics tables.

    Daily caps are measured as the sum of samples since UTC midnight.
    Gauge caps (concurrent connections) use the most recent sample.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    def get_current_usage(self, project_id: str, metric_type: str) -> float:
        """
        Get the usage figure compared against the cap for a metric.

        Args:
            project_id: Project identifier
            metric_type: Metric name, usually a HardCapType value

        Returns:
            Latest sample for gauge caps, otherwise today's total
        """
        if metric_type in {cap.value for cap in GAUGE_CAPS}:
            return self.get_latest_value(project_id, metric_type)

        now = utcnow()
        start_of_day = datetime.combine(now.date(), time.min)
        return self.get_usage_in_window(project_id, metric_type, start_of_day, now)

    def get_latest_value(self, project_id: str, metric_type: str) -> float:
        """Get the most recent sample value, or 0 when there is none."""
        with self._db.get_session() as session:
            latest = (
                session.query(UsageMetric.value)
                .filter(UsageMetric.project_id == project_id)
                .filter(UsageMetric.metric_type == metric_type)
                .order_by(UsageMetric.recorded_at.desc(), UsageMetric.id.desc())
                .first()
            )
        return float(latest.value) if latest else 0.0

    def get_usage_in_window(
        self,
        project_id: str,
        metric_type: str,
        start: datetime,
        end: datetime,
    ) -> float:
        """Sum of samples recorded in ``[start, end]``."""
        with self._db.get_session() as session:
            total = (
                session.query(func.coalesce(func.sum(UsageMetric.value), 0))
                .filter(UsageMetric.project_id == project_id)
                .filter(UsageMetric.metric_type == metric_type)
                .filter(UsageMetric.recorded_at >= start)
                .filter(UsageMetric.recorded_at <= end)
                .scalar()
            )
        return float(total or 0)

    def get_request_stats(self, project_id: str, start: datetime, end: datetime) -> tuple[int, int]:
        """
        Get request and error totals for a time range.

        Returns:
            Tuple of (total_requests, error_count)
        """
        with self._db.get_session() as session:
            requests, errors = (
                session.query(
                    func.coalesce(func.sum(ErrorMetric.request_count), 0),
                    func.coalesce(func.sum(ErrorMetric.error_count), 0),
                )
                .filter(ErrorMetric.project_id == project_id)
                .filter(ErrorMetric.recorded_at >= start)
                .filter(ErrorMetric.recorded_at <= end)
                .one()
            )
        return int(requests or 0), int(errors or 0)

    def record_usage(
        self,
        project_id: str,
        metric_type: str,
        amount: float = 1,
        recorded_at: datetime | None = None,
    ) -> None:
        """
        Record a usage sample. Failures are logged and dropped.

        Args:
            project_id: Project identifier
            metric_type: Metric name
            amount: Sample value
            recorded_at: Sample time (defaults to now)
        """
        if isinstance(metric_type, HardCapType):
            metric_type = metric_type.value
        try:
            with self._db.get_session() as session:
                session.add(
                    UsageMetric(
                        project_id=project_id,
                        metric_type=metric_type,
                        value=amount,
                        recorded_at=recorded_at or utcnow(),
                    )
                )
        except Exception as e:
            logger.error(f"Failed to record {metric_type} usage for project {project_id}: {e}")

    def record_requests(
        self,
        project_id: str,
        request_count: int,
        error_count: int = 0,
        recorded_at: datetime | None = None,
    ) -> None:
        """Record request and error counters for one interval. Failures are logged and dropped."""
        try:
            with self._db.get_session() as session:
                session.add(
                    ErrorMetric(
                        project_id=project_id,
                        request_count=request_count,
                        error_count=error_count,
                        recorded_at=recorded_at or utcnow(),
                    )
                )
        except Exception as e:
            logger.error(f"Failed to record request stats for project {project_id}: {e}")
