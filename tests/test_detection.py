"""Tests for the spike and error rate detectors."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from capguard.config import Settings
from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.detection import (
    DetectionAction,
    ErrorRateDetector,
    Severity,
    SpikeConfigOverride,
    SpikeConfigStore,
    SpikeDetector,
    resolve_spike_config,
)
from capguard.detection.base import action_for_severity
from capguard.errors import ValidationError
from capguard.metering import SqlUsageMeteringService


class TestActionForSeverity:
    """Tests for the severity to action mapping."""

    def test_not_detected(self) -> None:
        assert action_for_severity(False, Severity.SEVERE) == DetectionAction.NONE

    @pytest.mark.parametrize(
        "severity,expected",
        [
            (Severity.WARNING, DetectionAction.WARNING),
            (Severity.CRITICAL, DetectionAction.WARNING),
            (Severity.SEVERE, DetectionAction.SUSPEND),
        ],
    )
    def test_only_severe_suspends(self, severity: Severity, expected: DetectionAction) -> None:
        assert action_for_severity(True, severity) == expected


class TestSpikeDetector:
    """Tests for SpikeDetector."""

    @pytest.fixture
    def detector(
        self,
        db_manager: DatabaseManager,
        metering: SqlUsageMeteringService,
        test_settings: Settings,
    ) -> SpikeDetector:
        return SpikeDetector(db_manager, metering, config=test_settings)

    def _seed_baseline(self, metering: SqlUsageMeteringService, value: float, now) -> None:
        """Record ``value`` once per hour across the baseline period, outside the current window."""
        for hours_ago in range(1, 24):
            metering.record_usage(
                "p1", "db_queries_per_day", value, recorded_at=now - timedelta(hours=hours_ago, minutes=30)
            )

    def test_no_baseline_is_not_a_spike(self, detector: SpikeDetector) -> None:
        """Test that a project with no history never spikes."""
        result = detector.detect_usage_spike("p1", "db_queries_per_day", 1_000)

        assert result.detected is False
        assert result.average_usage == 0
        assert result.spike_multiplier == 0
        assert result.action == DetectionAction.NONE

    def test_below_multiplier(self, detector: SpikeDetector, metering: SqlUsageMeteringService) -> None:
        now = utcnow()
        self._seed_baseline(metering, 10, now)

        result = detector.detect_usage_spike("p1", "db_queries_per_day", 25, now=now)

        assert result.detected is False
        assert result.spike_multiplier == 2.5

    def test_usage_floor(self, detector: SpikeDetector, metering: SqlUsageMeteringService) -> None:
        """Test that a large ratio on tiny numbers is ignored."""
        now = utcnow()
        self._seed_baseline(metering, 1, now)

        result = detector.detect_usage_spike("p1", "db_queries_per_day", 9, now=now)

        assert result.spike_multiplier == 9
        assert result.detected is False

    @pytest.mark.parametrize(
        "current,severity,action",
        [
            (35, Severity.WARNING, DetectionAction.WARNING),
            (60, Severity.CRITICAL, DetectionAction.WARNING),
            (120, Severity.SEVERE, DetectionAction.SUSPEND),
        ],
    )
    def test_severity_tiers(
        self,
        detector: SpikeDetector,
        metering: SqlUsageMeteringService,
        current: float,
        severity: Severity,
        action: DetectionAction,
    ) -> None:
        now = utcnow()
        self._seed_baseline(metering, 10, now)

        result = detector.detect_usage_spike("p1", "db_queries_per_day", current, now=now)

        assert result.detected is True
        assert result.severity == severity
        assert result.action == action
        assert "Usage spike detected" in result.details

    def test_custom_threshold(self, detector: SpikeDetector, metering: SqlUsageMeteringService) -> None:
        now = utcnow()
        self._seed_baseline(metering, 10, now)

        result = detector.detect_usage_spike("p1", "db_queries_per_day", 25, threshold_multiplier=2.0, now=now)

        assert result.detected is True
        assert result.threshold_multiplier == 2.0

    def test_check_project_uses_detection_window(
        self,
        detector: SpikeDetector,
        metering: SqlUsageMeteringService,
    ) -> None:
        """Test that only usage inside the detection window counts as current."""
        now = utcnow()
        self._seed_baseline(metering, 2, now)
        metering.record_usage("p1", "db_queries_per_day", 200, recorded_at=now - timedelta(minutes=5))

        spikes = detector.check_project_for_spikes("p1", now=now)

        assert len(spikes) == 1
        assert spikes[0].metric_type == "db_queries_per_day"
        assert spikes[0].current_usage == 200

    def test_failing_metric_is_skipped(self, db_manager: DatabaseManager, test_settings: Settings) -> None:
        metering = MagicMock()
        metering.get_usage_in_window.side_effect = RuntimeError("boom")
        detector = SpikeDetector(db_manager, metering, config=test_settings)

        assert detector.check_project_for_spikes("p1") == []

    def test_record_and_statistics(self, detector: SpikeDetector, metering: SqlUsageMeteringService) -> None:
        now = utcnow()
        self._seed_baseline(metering, 10, now)
        detector.record_detection(detector.detect_usage_spike("p1", "db_queries_per_day", 35, now=now))
        detector.record_detection(detector.detect_usage_spike("p1", "db_queries_per_day", 120, now=now))

        history = detector.get_history("p1")
        stats = detector.get_statistics("p1")

        assert len(history) == 2
        assert stats["total"] == 2
        assert stats["by_severity"] == {"warning": 1, "critical": 0, "severe": 1}
        assert stats["by_action"]["suspend"] == 1
        assert stats["last_detected_at"] is not None

    def test_check_all_projects_records_spikes(
        self,
        detector: SpikeDetector,
        metering: SqlUsageMeteringService,
        make_project,
    ) -> None:
        make_project("p1")
        make_project("p2")
        now = utcnow()
        self._seed_baseline(metering, 2, now)
        metering.record_usage("p1", "db_queries_per_day", 200, recorded_at=now - timedelta(minutes=5))

        spikes = detector.check_all_projects_for_spikes()

        assert [s.project_id for s in spikes] == ["p1"]
        assert detector.get_statistics("p1")["total"] == 1

    def _seed_steady_operations(self, metering: SqlUsageMeteringService, project_id: str, per_hour: int, now) -> None:
        """Record single operations evenly over the last 24 hours, current window included."""
        for hours_ago in range(24):
            for i in range(per_hour):
                metering.record_usage(
                    project_id,
                    "function_invocations_per_day",
                    1,
                    recorded_at=now - timedelta(hours=hours_ago, minutes=1 + i * 2),
                )

    def test_steady_per_operation_traffic_is_not_a_spike(
        self,
        detector: SpikeDetector,
        metering: SqlUsageMeteringService,
    ) -> None:
        """Test that flat traffic recorded one operation at a time keeps a 1x ratio."""
        now = utcnow()
        self._seed_steady_operations(metering, "steady", 20, now)

        spikes = detector.check_project_for_spikes("steady", now=now)
        result = detector.detect_usage_spike("steady", "function_invocations_per_day", 20, now=now)

        assert spikes == []
        assert result.average_usage == pytest.approx(20)
        assert result.spike_multiplier == pytest.approx(1.0)

    def test_burst_over_steady_traffic_is_a_spike(
        self,
        detector: SpikeDetector,
        metering: SqlUsageMeteringService,
    ) -> None:
        now = utcnow()
        self._seed_steady_operations(metering, "busy", 20, now)
        metering.record_usage("busy", "function_invocations_per_day", 200, recorded_at=now - timedelta(minutes=3))

        spikes = detector.check_project_for_spikes("busy", now=now)

        assert len(spikes) == 1
        assert spikes[0].current_usage == 220
        assert spikes[0].spike_multiplier == pytest.approx(11.0)
        assert spikes[0].severity == Severity.SEVERE

    def test_project_override_applies(
        self,
        db_manager: DatabaseManager,
        metering: SqlUsageMeteringService,
        test_settings: Settings,
    ) -> None:
        """Test that a stored threshold and usage floor replace the defaults for one project."""
        store = SpikeConfigStore(db_manager, config=test_settings)
        detector = SpikeDetector(db_manager, metering, config=test_settings, config_store=store)
        now = utcnow()
        self._seed_baseline(metering, 1, now)
        metering.record_usage("p1", "db_queries_per_day", 4, recorded_at=now - timedelta(minutes=5))

        assert detector.check_project_for_spikes("p1", now=now) == []

        store.set_override("p1", {"threshold_multiplier": 2.0, "min_usage_threshold": 3})
        spikes = detector.check_project_for_spikes("p1", now=now)

        assert len(spikes) == 1
        assert spikes[0].threshold_multiplier == 2.0

    def test_disabled_project_is_skipped(
        self,
        db_manager: DatabaseManager,
        metering: SqlUsageMeteringService,
        test_settings: Settings,
    ) -> None:
        store = SpikeConfigStore(db_manager, config=test_settings)
        detector = SpikeDetector(db_manager, metering, config=test_settings, config_store=store)
        now = utcnow()
        self._seed_baseline(metering, 2, now)
        metering.record_usage("p1", "db_queries_per_day", 200, recorded_at=now - timedelta(minutes=5))

        store.set_override("p1", {"enabled": False})

        assert detector.check_project_for_spikes("p1", now=now) == []


class TestSpikeConfig:
    """Tests for spike config resolution and storage."""

    @pytest.fixture
    def store(self, db_manager: DatabaseManager, test_settings: Settings) -> SpikeConfigStore:
        return SpikeConfigStore(db_manager, config=test_settings)

    def test_resolve_without_override(self, store: SpikeConfigStore) -> None:
        assert resolve_spike_config(None, store.defaults) == store.defaults

    def test_resolve_field_by_field(self, store: SpikeConfigStore) -> None:
        override = SpikeConfigOverride(window_ms=30 * 60 * 1000)

        resolved = resolve_spike_config(override, store.defaults)

        assert resolved.window_ms == 30 * 60 * 1000
        assert resolved.threshold_multiplier == store.defaults.threshold_multiplier
        assert resolved.baseline_period_ms == store.defaults.baseline_period_ms
        assert resolved.enabled is True

    def test_override_round_trip_and_delete(self, store: SpikeConfigStore) -> None:
        store.set_override("p1", {"threshold_multiplier": 5.0})

        assert store.get_override("p1").threshold_multiplier == 5.0
        assert store.get_effective_config("p1").threshold_multiplier == 5.0
        assert store.get_effective_config("p2") == store.defaults

        assert store.delete_override("p1") is True
        assert store.delete_override("p1") is False
        assert store.get_override("p1") is None

    @pytest.mark.parametrize(
        "data",
        [
            {"threshold_multiplier": 0.5},
            {"window_ms": 1_000},
            {"baseline_period_ms": 60 * 60 * 1000, "window_ms": 2 * 60 * 60 * 1000},
            {"min_usage_threshold": -1},
            {"unknown": 1},
        ],
    )
    def test_rejects_malformed_override(self, store: SpikeConfigStore, data: dict) -> None:
        with pytest.raises(ValidationError):
            store.set_override("p1", data)

    def test_rejects_baseline_shorter_than_default_window(self, store: SpikeConfigStore) -> None:
        """Test that the merged config is checked, not just the override fields."""
        with pytest.raises(ValidationError):
            store.set_override("p1", {"baseline_period_ms": 60 * 60 * 1000})


class TestErrorRateDetector:
    """Tests for ErrorRateDetector."""

    @pytest.fixture
    def detector(
        self,
        db_manager: DatabaseManager,
        metering: SqlUsageMeteringService,
        test_settings: Settings,
    ) -> ErrorRateDetector:
        return ErrorRateDetector(db_manager, metering, config=test_settings)

    def test_request_floor(self, detector: ErrorRateDetector) -> None:
        """Test that a 100% error rate on few requests is not detected."""
        result = detector.detect_high_error_rate("p1", total_requests=10, error_count=10)

        assert result.error_rate == 100.0
        assert result.detected is False
        assert result.action == DetectionAction.NONE

    def test_below_threshold(self, detector: ErrorRateDetector) -> None:
        result = detector.detect_high_error_rate("p1", total_requests=200, error_count=40)
        assert result.detected is False

    @pytest.mark.parametrize(
        "errors,severity,action",
        [
            (60, Severity.WARNING, DetectionAction.WARNING),
            (80, Severity.CRITICAL, DetectionAction.WARNING),
            (95, Severity.SEVERE, DetectionAction.SUSPEND),
        ],
    )
    def test_severity_tiers(
        self,
        detector: ErrorRateDetector,
        errors: int,
        severity: Severity,
        action: DetectionAction,
    ) -> None:
        result = detector.detect_high_error_rate("p1", total_requests=100, error_count=errors)

        assert result.detected is True
        assert result.error_rate == float(errors)
        assert result.severity == severity
        assert result.action == action

    def test_zero_requests(self, detector: ErrorRateDetector) -> None:
        result = detector.detect_high_error_rate("p1", 0, 0)
        assert result.error_rate == 0
        assert result.detected is False

    @pytest.mark.parametrize(
        "total,errors",
        [(100, 101), (-1, 0), (100, -5)],
    )
    def test_rejects_impossible_counts(self, detector: ErrorRateDetector, total: int, errors: int) -> None:
        """Test that counts outside 0 <= errors <= requests are rejected."""
        with pytest.raises(ValidationError):
            detector.detect_high_error_rate("p1", total_requests=total, error_count=errors)

    def test_calculate_error_rate(self, detector: ErrorRateDetector, metering: SqlUsageMeteringService) -> None:
        now = utcnow()
        metering.record_requests("p1", 100, 10, recorded_at=now - timedelta(minutes=10))
        metering.record_requests("p1", 100, 30, recorded_at=now - timedelta(minutes=5))

        assert detector.calculate_error_rate("p1", now - timedelta(hours=1), now) == pytest.approx(0.2)
        assert detector.calculate_error_rate("p2", now - timedelta(hours=1), now) == 0.0

    def test_check_project_window(self, detector: ErrorRateDetector, metering: SqlUsageMeteringService) -> None:
        """Test that requests outside the window are ignored."""
        now = utcnow()
        metering.record_requests("p1", 1_000, 0, recorded_at=now - timedelta(hours=3))
        metering.record_requests("p1", 150, 140, recorded_at=now - timedelta(minutes=10))

        result = detector.check_project_for_high_error_rate("p1", now=now)

        assert result is not None
        assert result.total_requests == 150
        assert result.severity == Severity.SEVERE

    def test_check_project_nothing_found(self, detector: ErrorRateDetector) -> None:
        assert detector.check_project_for_high_error_rate("p1") is None

    def test_check_all_and_statistics(
        self,
        detector: ErrorRateDetector,
        metering: SqlUsageMeteringService,
        make_project,
    ) -> None:
        make_project("p1")
        make_project("p2")
        metering.record_requests("p1", 100, 80)
        metering.record_requests("p2", 100, 1)

        detections = detector.check_all_projects_for_high_error_rates()

        assert [d.project_id for d in detections] == ["p1"]
        stats = detector.get_statistics("p1")
        assert stats["total"] == 1
        assert stats["by_severity"]["critical"] == 1
        assert len(detector.get_history("p1")) == 1
