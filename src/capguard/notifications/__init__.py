"""Post-transition side effects: audit entries, notices and the queue that delivers them."""

from capguard.notifications.dispatcher import (
    AuditEntry,
    AuditLogger,
    LoggingAuditLogger,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    resolve_recipients,
)
from capguard.notifications.outbox import SideEffect, SideEffectQueue

__all__ = [
    "AuditEntry",
    "AuditLogger",
    "LoggingAuditLogger",
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "SideEffect",
    "SideEffectQueue",
    "resolve_recipients",
]
