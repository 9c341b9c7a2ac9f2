"""
Audit and notification contracts.

Delivery mechanics (email, persisted audit store) live outside this
package. The logging implementations here are the defaults and write
structured lines through the standard logger.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from capguard.db.base import utcnow
from capguard.db.models import Project

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One audit trail entry for a state transition."""

    action: str
    """Transition name, e.g. ``project.suspended``."""

    project_id: str
    actor: str = "system"
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "project_id": self.project_id,
            "actor": self.actor,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat(),
        }


class AuditLogger(Protocol):
    def append(self, entry: AuditEntry) -> None:
        ...


class NotificationDispatcher(Protocol):
    def send_suspension_notice(self, project: Project, reason: dict[str, Any], recipients: list[str]) -> None:
        ...

    def send_unsuspension_notice(self, project: Project, notes: str | None, recipients: list[str]) -> None:
        ...


class LoggingAuditLogger:
    """Writes audit entries to the ``capguard.audit`` logger."""

    def __init__(self, audit_logger: logging.Logger | None = None) -> None:
        self._logger = audit_logger or logging.getLogger("capguard.audit")

    def append(self, entry: AuditEntry) -> None:
        self._logger.info(f"{entry.action} project={entry.project_id} actor={entry.actor} details={entry.details}")


class LoggingNotificationDispatcher:
    """Logs notices instead of delivering them."""

    def send_suspension_notice(self, project: Project, reason: dict[str, Any], recipients: list[str]) -> None:
        if not recipients:
            logger.warning(f"No recipients for suspension notice of project {project.id}")
            return
        logger.info(
            f"Suspension notice for project {project.id} ({project.name}) to "
            f"{', '.join(recipients)}: {reason.get('details')}"
        )

    def send_unsuspension_notice(self, project: Project, notes: str | None, recipients: list[str]) -> None:
        if not recipients:
            return
        logger.info(f"Unsuspension notice for project {project.id} ({project.name}) to {', '.join(recipients)}")


def resolve_recipients(project: Project, admin_emails: list[str]) -> list[str]:
    """Project owner first, then platform admins, without duplicates."""
    recipients = []
    for email in [project.owner_email, *admin_emails]:
        if email and email not in recipients:
            recipients.append(email)
    return recipients
