"""
Pattern detection configuration.

Global defaults come from settings. A project may store an override in
which every field is optional; ``resolve_config`` merges the two one field
at a time so an override only wins where it sets a value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from capguard.config import Settings, get_settings
from capguard.db.manager import DatabaseManager
from capguard.db.models import PatternDetectionConfigRecord
from capguard.errors import ValidationError

logger = logging.getLogger(__name__)


class PatternType(str, Enum):
    """Malicious behavior patterns."""

    SQL_INJECTION = "sql_injection"
    AUTH_BRUTE_FORCE = "auth_brute_force"
    RAPID_KEY_CREATION = "rapid_key_creation"


# Name of the count threshold field for each pattern
THRESHOLD_FIELDS: dict[PatternType, str] = {
    PatternType.SQL_INJECTION: "min_occurrences",
    PatternType.AUTH_BRUTE_FORCE: "min_attempts",
    PatternType.RAPID_KEY_CREATION: "min_keys",
}


@dataclass(frozen=True)
class PatternRule:
    """Effective settings for one pattern."""

    enabled: bool
    threshold: int
    """Events needed in the window to confirm a detection."""

    window_ms: int
    suspend_on_detection: bool


@dataclass(frozen=True)
class PatternDetectionConfig:
    """Effective pattern settings for a project."""

    enabled: bool
    sql_injection: PatternRule
    auth_brute_force: PatternRule
    rapid_key_creation: PatternRule

    def rule_for(self, pattern_type: PatternType) -> PatternRule:
        return getattr(self, pattern_type.value)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"enabled": self.enabled}
        for pattern_type in PatternType:
            rule = self.rule_for(pattern_type)
            result[pattern_type.value] = {
                "enabled": rule.enabled,
                THRESHOLD_FIELDS[pattern_type]: rule.threshold,
                "window_ms": rule.window_ms,
                "suspend_on_detection": rule.suspend_on_detection,
            }
        return result


def default_config(config: Settings | None = None) -> PatternDetectionConfig:
    """Build the global defaults from settings."""
    s = config or get_settings()
    return PatternDetectionConfig(
        enabled=True,
        sql_injection=PatternRule(
            enabled=s.sql_injection_enabled,
            threshold=s.sql_injection_min_occurrences,
            window_ms=s.sql_injection_window_ms,
            suspend_on_detection=s.sql_injection_suspend_on_detection,
        ),
        auth_brute_force=PatternRule(
            enabled=s.auth_brute_force_enabled,
            threshold=s.auth_brute_force_min_attempts,
            window_ms=s.auth_brute_force_window_ms,
            suspend_on_detection=s.auth_brute_force_suspend_on_detection,
        ),
        rapid_key_creation=PatternRule(
            enabled=s.rapid_key_creation_enabled,
            threshold=s.rapid_key_creation_min_keys,
            window_ms=s.rapid_key_creation_window_ms,
            suspend_on_detection=s.rapid_key_creation_suspend_on_detection,
        ),
    )


class _RuleOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool | None = None
    window_ms: int | None = Field(default=None, gt=0, description="Rolling window in milliseconds")
    suspend_on_detection: bool | None = None


class SqlInjectionOverride(_RuleOverride):
    min_occurrences: int | None = Field(default=None, ge=1)


class AuthBruteForceOverride(_RuleOverride):
    min_attempts: int | None = Field(default=None, ge=1)


class RapidKeyCreationOverride(_RuleOverride):
    min_keys: int | None = Field(default=None, ge=1)


class PatternConfigOverride(BaseModel):
    """Per-project override; unset fields fall back to the defaults."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool | None = Field(default=None, description="Master switch for all patterns")
    sql_injection: SqlInjectionOverride | None = None
    auth_brute_force: AuthBruteForceOverride | None = None
    rapid_key_creation: RapidKeyCreationOverride | None = None

    @classmethod
    def parse(cls, data: dict[str, Any]) -> PatternConfigOverride:
        """
        Validate raw override data.

        Raises:
            ValidationError: If the data is malformed
        """
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise ValidationError(
                f"Invalid pattern config override: {field}: {first['msg']}",
                field=field,
                value=first.get("input"),
            ) from None

    def rule_override(self, pattern_type: PatternType) -> _RuleOverride | None:
        return getattr(self, pattern_type.value)


def resolve_config(
    override: PatternConfigOverride | None,
    defaults: PatternDetectionConfig,
) -> PatternDetectionConfig:
    """
    Merge an override with the defaults, field by field.

    Args:
        override: Stored override, or None
        defaults: Global default configuration

    Returns:
        Effective configuration
    """
    if override is None:
        return defaults

    rules = {}
    for pattern_type in PatternType:
        base = defaults.rule_for(pattern_type)
        rule = override.rule_override(pattern_type)
        if rule is None:
            rules[pattern_type.value] = base
            continue

        threshold = getattr(rule, THRESHOLD_FIELDS[pattern_type])
        rules[pattern_type.value] = PatternRule(
            enabled=rule.enabled if rule.enabled is not None else base.enabled,
            threshold=threshold if threshold is not None else base.threshold,
            window_ms=rule.window_ms if rule.window_ms is not None else base.window_ms,
            suspend_on_detection=(
                rule.suspend_on_detection
                if rule.suspend_on_detection is not None
                else base.suspend_on_detection
            ),
        )

    return replace(
        defaults,
        enabled=override.enabled if override.enabled is not None else defaults.enabled,
        **rules,
    )


class PatternConfigStore:
    """CRUD over per-project pattern overrides."""

    def __init__(self, db_manager: DatabaseManager, config: Settings | None = None) -> None:
        self._db = db_manager
        self._defaults = default_config(config)

    @property
    def defaults(self) -> PatternDetectionConfig:
        return self._defaults

    def get_override(self, project_id: str) -> PatternConfigOverride | None:
        """Load a project's stored override, or None if it has none."""
        with self._db.get_session() as session:
            record = (
                session.query(PatternDetectionConfigRecord)
                .filter(PatternDetectionConfigRecord.project_id == project_id)
                .first()
            )
            if record is None:
                return None
            return _record_to_override(record)

    def get_effective_config(self, project_id: str) -> PatternDetectionConfig:
        """Resolve the configuration that applies to a project."""
        return resolve_config(self.get_override(project_id), self._defaults)

    def set_override(
        self,
        project_id: str,
        override: PatternConfigOverride | dict[str, Any],
    ) -> PatternConfigOverride:
        """
        Store a project's override, replacing any previous one.

        Args:
            project_id: Project identifier
            override: Override model or raw dict

        Returns:
            The validated override

        Raises:
            ValidationError: If a raw dict is malformed
        """
        if not isinstance(override, PatternConfigOverride):
            override = PatternConfigOverride.parse(override)

        with self._db.get_session() as session:
            record = (
                session.query(PatternDetectionConfigRecord)
                .filter(PatternDetectionConfigRecord.project_id == project_id)
                .first()
            )
            if record is None:
                record = PatternDetectionConfigRecord(project_id=project_id)
                session.add(record)
            _apply_override(record, override)

        logger.info(f"Stored pattern config override for project {project_id}")
        return override

    def delete_override(self, project_id: str) -> bool:
        """Remove a project's override so the defaults apply."""
        with self._db.get_session() as session:
            deleted = (
                session.query(PatternDetectionConfigRecord)
                .filter(PatternDetectionConfigRecord.project_id == project_id)
                .delete(synchronize_session=False)
            )
        return deleted > 0


def _record_to_override(record: PatternDetectionConfigRecord) -> PatternConfigOverride:
    data: dict[str, Any] = {"enabled": record.enabled}
    for pattern_type in PatternType:
        prefix = pattern_type.value
        threshold_field = THRESHOLD_FIELDS[pattern_type]
        data[prefix] = {
            "enabled": getattr(record, f"{prefix}_enabled"),
            threshold_field: getattr(record, f"{prefix}_{threshold_field}"),
            "window_ms": getattr(record, f"{prefix}_window_ms"),
            "suspend_on_detection": getattr(record, f"{prefix}_suspend_on_detection"),
        }
    return PatternConfigOverride.model_validate(data)


def _apply_override(record: PatternDetectionConfigRecord, override: PatternConfigOverride) -> None:
    record.enabled = override.enabled
    for pattern_type in PatternType:
        prefix = pattern_type.value
        threshold_field = THRESHOLD_FIELDS[pattern_type]
        rule = override.rule_override(pattern_type)
        setattr(record, f"{prefix}_enabled", rule.enabled if rule else None)
        setattr(record, f"{prefix}_{threshold_field}", getattr(rule, threshold_field) if rule else None)
        setattr(record, f"{prefix}_window_ms", rule.window_ms if rule else None)
        setattr(record, f"{prefix}_suspend_on_detection", rule.suspend_on_detection if rule else None)
