"""
Hard cap configuration and enforcement.

QuotaStore holds per-project cap values; EnforcementEngine compares
metered usage against them.
"""

from capguard.quota.enforcement import EnforcementEngine, QuotaCheckResult
from capguard.quota.store import QuotaStore

__all__ = [
    "EnforcementEngine",
    "QuotaCheckResult",
    "QuotaStore",
]
