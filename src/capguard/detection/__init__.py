"""
Anomaly detectors.

Each detector evaluates one signal for a project and returns results;
the sweep decides what to do with them.
"""

from capguard.detection.base import DetectionAction, Severity
from capguard.detection.error_rate import ErrorRateDetectionResult, ErrorRateDetector
from capguard.detection.pattern_config import (
    PatternConfigOverride,
    PatternConfigStore,
    PatternDetectionConfig,
    PatternRule,
    PatternType,
    default_config,
    resolve_config,
)
from capguard.detection.patterns import PatternDetectionResult, PatternDetector, detect_sql_injection
from capguard.detection.spike import SpikeDetectionResult, SpikeDetector
from capguard.detection.spike_config import (
    SpikeConfigOverride,
    SpikeConfigStore,
    SpikeDetectionConfig,
    resolve_spike_config,
)

__all__ = [
    "DetectionAction",
    "ErrorRateDetectionResult",
    "ErrorRateDetector",
    "PatternConfigOverride",
    "PatternConfigStore",
    "PatternDetectionConfig",
    "PatternDetectionResult",
    "PatternDetector",
    "PatternRule",
    "PatternType",
    "Severity",
    "SpikeConfigOverride",
    "SpikeConfigStore",
    "SpikeDetectionConfig",
    "SpikeDetectionResult",
    "SpikeDetector",
    "default_config",
    "detect_sql_injection",
    "resolve_config",
    "resolve_spike_config",
]
