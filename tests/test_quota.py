"""Tests for quota storage and enforcement."""

from unittest.mock import MagicMock

import pytest

from capguard.caps import DEFAULT_HARD_CAPS, HardCapType, validate_cap_value
from capguard.errors import ValidationError
from capguard.metering import SqlUsageMeteringService
from capguard.quota import EnforcementEngine, QuotaStore


class TestCapValidation:
    """Tests for cap value bounds."""

    @pytest.mark.parametrize("value", [1, 500, 1_000_000])
    def test_accepts_values_in_range(self, value: int) -> None:
        assert validate_cap_value(value) == value

    @pytest.mark.parametrize("value", [0, -5, 1_000_001, 10.5, "100", True, None])
    def test_rejects_invalid_values(self, value: object) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_cap_value(value)
        assert exc_info.value.field == "cap_value"


class TestQuotaStore:
    """Tests for QuotaStore."""

    def test_limit_falls_back_to_default(self, quota_store: QuotaStore) -> None:
        """Test that a project without rows gets the platform defaults."""
        assert quota_store.get("p1", HardCapType.DB_QUERIES_PER_DAY) is None
        assert quota_store.get_limit("p1", "db_queries_per_day") == 10_000
        assert quota_store.get_limit("p1", HardCapType.REALTIME_CONNECTIONS) == 100

    def test_set_creates_then_updates(self, quota_store: QuotaStore) -> None:
        """Test that set upserts a single row."""
        quota_store.set("p1", "db_queries_per_day", 500)
        quota_store.set("p1", "db_queries_per_day", 750)

        rows = quota_store.get_all("p1")
        assert len(rows) == 1
        assert rows[0].cap_value == 750
        assert quota_store.get_limit("p1", "db_queries_per_day") == 750

    def test_set_rejects_unknown_cap_type(self, quota_store: QuotaStore) -> None:
        with pytest.raises(ValidationError) as exc_info:
            quota_store.set("p1", "bandwidth_per_day", 10)
        assert exc_info.value.field == "cap_type"

    def test_set_rejects_out_of_range_value(self, quota_store: QuotaStore) -> None:
        with pytest.raises(ValidationError):
            quota_store.set("p1", "db_queries_per_day", 0)
        assert quota_store.get_all("p1") == []

    def test_set_many_is_all_or_nothing(self, quota_store: QuotaStore) -> None:
        """Test that one invalid entry prevents every write."""
        with pytest.raises(ValidationError):
            quota_store.set_many("p1", {"db_queries_per_day": 50, "realtime_connections": -1})
        assert quota_store.get_all("p1") == []

        quota_store.set_many("p1", {"db_queries_per_day": 50, "realtime_connections": 5})
        assert quota_store.get_limit("p1", "realtime_connections") == 5

    def test_apply_defaults_is_idempotent(self, quota_store: QuotaStore) -> None:
        """Test that defaults fill gaps without touching custom values."""
        quota_store.set("p1", "db_queries_per_day", 42)

        assert quota_store.apply_defaults("p1") == len(HardCapType) - 1
        assert quota_store.apply_defaults("p1") == 0

        assert quota_store.get_limit("p1", "db_queries_per_day") == 42
        assert len(quota_store.get_all("p1")) == len(HardCapType)

    def test_reset_restores_defaults(self, quota_store: QuotaStore) -> None:
        quota_store.set("p1", "storage_uploads_per_day", 3)

        assert quota_store.reset("p1") == len(HardCapType)
        assert quota_store.get_limit("p1", "storage_uploads_per_day") == 1_000

    def test_delete(self, quota_store: QuotaStore) -> None:
        quota_store.set("p1", "function_invocations_per_day", 20)

        assert quota_store.delete("p1", "function_invocations_per_day") is True
        assert quota_store.delete("p1", "function_invocations_per_day") is False
        assert quota_store.get_limit("p1", "function_invocations_per_day") == 5_000

    def test_has_quotas_configured(self, quota_store: QuotaStore) -> None:
        assert quota_store.has_quotas_configured("p1") is False
        quota_store.set("p1", "realtime_connections", 10)
        assert quota_store.has_quotas_configured("p1") is True

    def test_get_quota_stats(self, quota_store: QuotaStore) -> None:
        quota_store.set("p1", "realtime_connections", 10)

        stats = {s["cap_type"]: s for s in quota_store.get_quota_stats("p1")}
        assert stats["realtime_connections"]["cap_value"] == 10
        assert stats["realtime_connections"]["is_default"] is False
        assert stats["realtime_connections"]["configured"] is True
        assert stats["db_queries_per_day"]["is_default"] is True
        assert stats["db_queries_per_day"]["configured"] is False


class TestEnforcementEngine:
    """Tests for EnforcementEngine."""

    def test_usage_at_limit_is_blocked(self, enforcement: EnforcementEngine) -> None:
        """Test the limit boundary: equal is blocked, one below passes."""
        blocked = enforcement.check_quota("p1", "db_queries_per_day", 10_000)
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.limit == 10_000

        allowed = enforcement.check_quota("p1", "db_queries_per_day", 9_999)
        assert allowed.allowed is True
        assert allowed.remaining == 1

    def test_fractional_usage_keeps_headroom(self, enforcement: EnforcementEngine) -> None:
        """Test that fractional usage below the limit reports the exact headroom."""
        result = enforcement.check_quota("p1", "realtime_connections", 99.5)

        assert result.allowed is True
        assert result.remaining == pytest.approx(0.5)

    def test_uses_configured_limit(self, enforcement: EnforcementEngine, quota_store: QuotaStore) -> None:
        quota_store.set("p1", "realtime_connections", 5)

        result = enforcement.check_quota("p1", HardCapType.REALTIME_CONNECTIONS, 7)
        assert result.allowed is False
        assert result.limit == 5
        assert result.remaining == 0

    def test_unknown_cap_type_raises(self, enforcement: EnforcementEngine) -> None:
        with pytest.raises(ValidationError):
            enforcement.check_quota("p1", "unknown", 1)

    def test_fails_open_on_quota_lookup_error(self) -> None:
        """Test that a store failure allows the operation with the default limit."""
        store = MagicMock(spec=QuotaStore)
        store.get_limit.side_effect = RuntimeError("database unavailable")
        engine = EnforcementEngine(store, MagicMock())

        result = engine.check_quota("p1", "db_queries_per_day", 50_000)

        assert result.allowed is True
        assert result.limit == DEFAULT_HARD_CAPS[HardCapType.DB_QUERIES_PER_DAY]

    def test_fails_open_on_metering_error(self, quota_store: QuotaStore) -> None:
        metering = MagicMock()
        metering.get_current_usage.side_effect = RuntimeError("metering down")
        engine = EnforcementEngine(quota_store, metering)

        result = engine.can_perform_operation("p1", "storage_uploads_per_day")

        assert result.allowed is True
        assert result.current_usage == 0

    def test_can_perform_operation_reads_daily_total(
        self,
        enforcement: EnforcementEngine,
        metering: SqlUsageMeteringService,
        quota_store: QuotaStore,
    ) -> None:
        quota_store.set("p1", "storage_uploads_per_day", 10)
        metering.record_usage("p1", "storage_uploads_per_day", 6)
        metering.record_usage("p1", "storage_uploads_per_day", 4)

        result = enforcement.can_perform_operation("p1", "storage_uploads_per_day")
        assert result.current_usage == 10
        assert result.allowed is False

    def test_gauge_cap_uses_latest_sample(
        self,
        enforcement: EnforcementEngine,
        metering: SqlUsageMeteringService,
    ) -> None:
        """Test that concurrent connections are a level, not a running sum."""
        from datetime import timedelta

        from capguard.db.base import utcnow

        now = utcnow()
        metering.record_usage("p1", "realtime_connections", 90, recorded_at=now - timedelta(minutes=2))
        metering.record_usage("p1", "realtime_connections", 40, recorded_at=now - timedelta(minutes=1))

        result = enforcement.can_perform_operation("p1", "realtime_connections")
        assert result.current_usage == 40
        assert result.allowed is True

    def test_violation_selection(
        self,
        enforcement: EnforcementEngine,
        metering: SqlUsageMeteringService,
    ) -> None:
        """Test first_violation follows declaration order and most_exceeded follows the ratio."""
        metering.record_usage("p1", "db_queries_per_day", 10_001)
        metering.record_usage("p1", "realtime_connections", 300)

        violations = enforcement.get_quota_violations("p1")
        assert [v.cap_type for v in violations] == [
            HardCapType.DB_QUERIES_PER_DAY,
            HardCapType.REALTIME_CONNECTIONS,
        ]
        assert enforcement.first_violation("p1").cap_type == HardCapType.DB_QUERIES_PER_DAY
        assert enforcement.most_exceeded_violation("p1").cap_type == HardCapType.REALTIME_CONNECTIONS

    def test_no_violation(self, enforcement: EnforcementEngine) -> None:
        assert enforcement.first_violation("p1") is None
        assert enforcement.most_exceeded_violation("p1") is None

    def test_record_usage_never_raises(self) -> None:
        metering = MagicMock()
        metering.record_usage.side_effect = RuntimeError("write failed")
        engine = EnforcementEngine(MagicMock(), metering)

        engine.record_usage("p1", "db_queries_per_day", 5)
        engine.record_usage("p1", "not_a_cap", 5)

        metering.record_usage.assert_called_once_with("p1", "db_queries_per_day", 5)
