"""Database package for capguard."""

from capguard.db.base import Base, utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import (
    ErrorMetric,
    ErrorRateDetectionRecord,
    PatternDetectionConfigRecord,
    PatternDetectionRecord,
    Project,
    ProjectQuota,
    SecurityEvent,
    SpikeDetectionConfigRecord,
    SpikeDetectionRecord,
    Suspension,
    SuspensionHistory,
    UsageMetric,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "ErrorMetric",
    "ErrorRateDetectionRecord",
    "PatternDetectionConfigRecord",
    "PatternDetectionRecord",
    "Project",
    "ProjectQuota",
    "SecurityEvent",
    "SpikeDetectionConfigRecord",
    "SpikeDetectionRecord",
    "Suspension",
    "SuspensionHistory",
    "UsageMetric",
    "utcnow",
]
