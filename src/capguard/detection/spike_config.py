"""
Spike detection configuration.

Defaults come from settings; a project may store an override with any
subset of fields set. ``resolve_spike_config`` fills the gaps from the
defaults without touching the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from capguard.config import Settings, get_settings
from capguard.db.manager import DatabaseManager
from capguard.db.models import SpikeDetectionConfigRecord
from capguard.errors import ValidationError

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

OVERRIDE_FIELDS = ("enabled", "threshold_multiplier", "window_ms", "baseline_period_ms", "min_usage_threshold")


@dataclass(frozen=True)
class SpikeDetectionConfig:
    """Effective spike settings for a project."""

    enabled: bool
    threshold_multiplier: float
    window_ms: int
    """Length of the window whose total is compared with the baseline."""

    baseline_period_ms: int
    min_usage_threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in OVERRIDE_FIELDS}


def default_spike_config(config: Settings | None = None) -> SpikeDetectionConfig:
    s = config or get_settings()
    return SpikeDetectionConfig(
        enabled=True,
        threshold_multiplier=s.spike_threshold_multiplier,
        window_ms=s.spike_detection_window_ms,
        baseline_period_ms=s.spike_baseline_period_ms,
        min_usage_threshold=s.min_usage_for_spike_detection,
    )


class SpikeConfigOverride(BaseModel):
    """Per-project override; unset fields fall back to the defaults."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool | None = None
    threshold_multiplier: float | None = Field(default=None, ge=1.0, le=100.0)
    window_ms: int | None = Field(default=None, ge=MINUTE_MS, le=DAY_MS, description="Detection window")
    baseline_period_ms: int | None = Field(default=None, ge=HOUR_MS, le=30 * DAY_MS)
    min_usage_threshold: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _baseline_longer_than_window(self) -> SpikeConfigOverride:
        if (
            self.window_ms is not None
            and self.baseline_period_ms is not None
            and self.baseline_period_ms <= self.window_ms
        ):
            raise ValueError("baseline_period_ms must be longer than window_ms")
        return self

    @classmethod
    def parse(cls, data: dict[str, Any]) -> SpikeConfigOverride:
        """
        Validate raw override data.

        Raises:
            ValidationError: If the data is malformed
        """
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "baseline_period_ms"
            raise ValidationError(
                f"Invalid spike config override: {field}: {first['msg']}",
                field=field,
                value=first.get("input"),
            ) from None


def resolve_spike_config(
    override: SpikeConfigOverride | None,
    defaults: SpikeDetectionConfig,
) -> SpikeDetectionConfig:
    """Merge an override with the defaults, field by field."""
    if override is None:
        return defaults

    values = {}
    for name in OVERRIDE_FIELDS:
        value = getattr(override, name)
        values[name] = value if value is not None else getattr(defaults, name)
    return SpikeDetectionConfig(**values)


class SpikeConfigStore:
    """CRUD over per-project spike overrides."""

    def __init__(self, db_manager: DatabaseManager, config: Settings | None = None) -> None:
        self._db = db_manager
        self._defaults = default_spike_config(config)

    @property
    def defaults(self) -> SpikeDetectionConfig:
        return self._defaults

    def get_override(self, project_id: str) -> SpikeConfigOverride | None:
        with self._db.get_session() as session:
            record = (
                session.query(SpikeDetectionConfigRecord)
                .filter(SpikeDetectionConfigRecord.project_id == project_id)
                .first()
            )
            if record is None:
                return None
            return SpikeConfigOverride.model_validate({name: getattr(record, name) for name in OVERRIDE_FIELDS})

    def get_effective_config(self, project_id: str) -> SpikeDetectionConfig:
        return resolve_spike_config(self.get_override(project_id), self._defaults)

    def set_override(
        self,
        project_id: str,
        override: SpikeConfigOverride | dict[str, Any],
    ) -> SpikeConfigOverride:
        """
        Store a project's override, replacing any previous one.

        The merged result must still have a baseline longer than the window,
        so an override that only shortens the baseline is checked against the
        default window.

        Raises:
            ValidationError: If the override is malformed
        """
        if not isinstance(override, SpikeConfigOverride):
            override = SpikeConfigOverride.parse(override)

        effective = resolve_spike_config(override, self._defaults)
        if effective.baseline_period_ms <= effective.window_ms:
            raise ValidationError(
                "baseline_period_ms must be longer than window_ms",
                field="baseline_period_ms",
                value=effective.baseline_period_ms,
            )

        with self._db.get_session() as session:
            record = (
                session.query(SpikeDetectionConfigRecord)
                .filter(SpikeDetectionConfigRecord.project_id == project_id)
                .first()
            )
            if record is None:
                record = SpikeDetectionConfigRecord(project_id=project_id)
                session.add(record)
            for name in OVERRIDE_FIELDS:
                setattr(record, name, getattr(override, name))

        logger.info(f"Stored spike config override for project {project_id}")
        return override

    def delete_override(self, project_id: str) -> bool:
        """Remove a project's override so the defaults apply."""
        with self._db.get_session() as session:
            deleted = (
                session.query(SpikeDetectionConfigRecord)
                .filter(SpikeDetectionConfigRecord.project_id == project_id)
                .delete(synchronize_session=False)
            )
        return deleted > 0
