"""SQLAlchemy models for quota, detection and suspension state."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Boolean, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from capguard.db.base import Base, TimestampMixin, utcnow


class Project(TimestampMixin, Base):
    """
    Hosted project as seen by this service.

    Identity and ownership belong to the project-management side; only
    ``status`` is written here, inside suspension transactions.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False, index=True)
    environment: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    suspensions: Mapped[list["Suspension"]] = relationship(
        "Suspension", back_populates="project", cascade="all, delete-orphan"
    )


class ProjectQuota(TimestampMixin, Base):
    """Configured cap value for one project and cap type."""

    __tablename__ = "project_quotas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # No foreign key: caps can be provisioned before the project row exists
    project_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cap_type: Mapped[str] = mapped_column(String(50), nullable=False)
    cap_value: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (UniqueConstraint("project_id", "cap_type", name="uq_project_quotas_project_cap"),)


class Suspension(Base):
    """A suspension; unresolved (``resolved_at IS NULL``) means currently suspended."""

    __tablename__ = "suspensions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reason: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    cap_exceeded: Mapped[str] = mapped_column(String(50), nullable=False)
    suspended_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suspension_type: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)

    project: Mapped["Project"] = relationship("Project", back_populates="suspensions")

    # At most one unresolved suspension per project
    __table_args__ = (
        Index(
            "uq_suspensions_active_project",
            "project_id",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )


class SuspensionHistory(Base):
    """Append-only trail of suspend/unsuspend transitions."""

    __tablename__ = "suspension_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    reason: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)


class UsageMetric(Base):
    """Usage sample recorded by the metering side."""

    __tablename__ = "usage_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (Index("ix_usage_metrics_project_type_time", "project_id", "metric_type", "recorded_at"),)


class ErrorMetric(Base):
    """Request and error counters for one reporting interval."""

    __tablename__ = "error_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (Index("ix_error_metrics_project_time", "project_id", "recorded_at"),)


class SecurityEvent(Base):
    """Raw security-relevant event used by pattern detection."""

    __tablename__ = "security_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (Index("ix_security_events_project_type_time", "project_id", "event_type", "occurred_at"),)


class SpikeDetectionRecord(Base):
    """Persisted usage-spike detection."""

    __tablename__ = "spike_detections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    current_value: Mapped[float] = mapped_column(Float, nullable=False)
    average_value: Mapped[float] = mapped_column(Float, nullable=False)
    multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    action_taken: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (Index("ix_spike_detections_project_time", "project_id", "detected_at"),)


class ErrorRateDetectionRecord(Base):
    """Persisted high-error-rate detection."""

    __tablename__ = "error_rate_detections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    error_rate: Mapped[float] = mapped_column(Float, nullable=False)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    action_taken: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (Index("ix_error_rate_detections_project_time", "project_id", "detected_at"),)


class PatternDetectionRecord(Base):
    """Persisted malicious-pattern detection."""

    __tablename__ = "pattern_detections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pattern_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    detection_window_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    action_taken: Mapped[str] = mapped_column(String(20), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (Index("ix_pattern_detections_project_time", "project_id", "detected_at"),)


class PatternDetectionConfigRecord(TimestampMixin, Base):
    """Per-project pattern detection override. NULL columns fall back to global defaults."""

    __tablename__ = "pattern_detection_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    enabled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    sql_injection_enabled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    sql_injection_min_occurrences: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sql_injection_window_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    sql_injection_suspend_on_detection: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    auth_brute_force_enabled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    auth_brute_force_min_attempts: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    auth_brute_force_window_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    auth_brute_force_suspend_on_detection: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    rapid_key_creation_enabled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    rapid_key_creation_min_keys: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rapid_key_creation_window_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    rapid_key_creation_suspend_on_detection: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)


class SpikeDetectionConfigRecord(TimestampMixin, Base):
    """Per-project spike detection override. NULL columns fall back to global defaults."""

    __tablename__ = "spike_detection_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    enabled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    threshold_multiplier: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    window_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    baseline_period_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    min_usage_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
