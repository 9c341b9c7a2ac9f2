"""
Hard cap enforcement.

Compares metered usage against configured caps. Lookups that fail open:
an infrastructure error answers "allowed" so a transient fault never blocks
legitimate traffic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from capguard.caps import DEFAULT_HARD_CAPS, HardCapType, parse_cap_type
from capguard.metering import UsageMeteringService
from capguard.quota.store import QuotaStore

logger = logging.getLogger(__name__)


@dataclass
class QuotaCheckResult:
    """Result of comparing usage against one cap."""

    project_id: str
    """Project that was checked."""

    cap_type: HardCapType
    """Cap that was checked."""

    allowed: bool
    """Whether usage is strictly below the limit."""

    limit: int
    """Effective limit (configured value or default)."""

    remaining: float
    """Headroom before the limit, never negative; fractional usage is not rounded."""

    current_usage: float
    """Usage figure the check was made against."""

    @property
    def usage_ratio(self) -> float:
        """Usage as a fraction of the limit."""
        return self.current_usage / self.limit if self.limit else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "cap_type": self.cap_type.value,
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "current_usage": self.current_usage,
        }


class EnforcementEngine:
    """Decides whether a project may keep consuming a capped resource."""

    def __init__(self, quota_store: QuotaStore, metering: UsageMeteringService) -> None:
        """
        Initialize the engine.

        Args:
            quota_store: Source of configured caps
            metering: Source of current usage
        """
        self._quotas = quota_store
        self._metering = metering

    def check_quota(
        self,
        project_id: str,
        cap_type: HardCapType | str,
        current_usage: float,
    ) -> QuotaCheckResult:
        """
        Compare a usage figure against the project's cap.

        Usage equal to the limit is blocked; one below it passes.

        Args:
            project_id: Project identifier
            cap_type: Cap to check
            current_usage: Usage to compare

        Returns:
            QuotaCheckResult (allowed with the default limit if the cap lookup fails)

        Raises:
            ValidationError: If cap_type is not a known cap
        """
        cap = parse_cap_type(cap_type)
        try:
            limit = self._quotas.get_limit(project_id, cap)
        except Exception as e:
            logger.error(f"Quota lookup failed for {project_id}/{cap.value}, allowing: {e}")
            default_limit = DEFAULT_HARD_CAPS[cap]
            return QuotaCheckResult(
                project_id=project_id,
                cap_type=cap,
                allowed=True,
                limit=default_limit,
                remaining=max(0.0, default_limit - current_usage),
                current_usage=current_usage,
            )

        return QuotaCheckResult(
            project_id=project_id,
            cap_type=cap,
            allowed=current_usage < limit,
            limit=limit,
            remaining=max(0.0, limit - current_usage),
            current_usage=current_usage,
        )

    def can_perform_operation(self, project_id: str, cap_type: HardCapType | str) -> QuotaCheckResult:
        """Look up current usage and check it against the cap. Fails open on metering errors."""
        cap = parse_cap_type(cap_type)
        try:
            usage = self._metering.get_current_usage(project_id, cap.value)
        except Exception as e:
            logger.error(f"Usage lookup failed for {project_id}/{cap.value}, allowing: {e}")
            limit = DEFAULT_HARD_CAPS[cap]
            return QuotaCheckResult(
                project_id=project_id,
                cap_type=cap,
                allowed=True,
                limit=limit,
                remaining=limit,
                current_usage=0,
            )
        return self.check_quota(project_id, cap, usage)

    def get_quota_violations(self, project_id: str) -> list[QuotaCheckResult]:
        """
        Check every cap type and keep only the failing ones.

        Returns:
            Failing results in cap declaration order
        """
        violations = []
        for cap in HardCapType:
            result = self.can_perform_operation(project_id, cap)
            if not result.allowed:
                violations.append(result)
        return violations

    def first_violation(self, project_id: str) -> QuotaCheckResult | None:
        """Walk caps in declaration order and stop at the first failure."""
        for cap in HardCapType:
            result = self.can_perform_operation(project_id, cap)
            if not result.allowed:
                return result
        return None

    def most_exceeded_violation(self, project_id: str) -> QuotaCheckResult | None:
        """Pick the failing cap with the largest usage-to-limit ratio (ties keep declaration order)."""
        violations = self.get_quota_violations(project_id)
        if not violations:
            return None
        return max(violations, key=lambda v: v.usage_ratio)

    def record_usage(self, project_id: str, cap_type: HardCapType | str, amount: float = 1) -> None:
        """Forward a usage sample to metering. Never raises."""
        try:
            cap = parse_cap_type(cap_type)
            self._metering.record_usage(project_id, cap.value, amount)
        except Exception as e:
            logger.error(f"Failed to record usage for {project_id}/{cap_type}: {e}")
