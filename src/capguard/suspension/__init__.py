"""Project suspension state machine."""

from capguard.suspension.controller import (
    HistoryAction,
    ProjectStatus,
    SuspensionController,
    SuspensionReason,
    SuspensionType,
    TransitionOutcome,
    TransitionResult,
)

__all__ = [
    "HistoryAction",
    "ProjectStatus",
    "SuspensionController",
    "SuspensionReason",
    "SuspensionType",
    "TransitionOutcome",
    "TransitionResult",
]
