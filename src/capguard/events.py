"""Security event log feeding the pattern detectors."""

import logging
from datetime import datetime
from enum import Enum

from capguard.db.base import utcnow
from capguard.db.manager import DatabaseManager
from capguard.db.models import SecurityEvent

logger = logging.getLogger(__name__)


class SecurityEventType(str, Enum):
    """Kinds of raw events the pattern detectors count."""

    QUERY = "query"
    AUTH_FAILURE = "auth_failure"
    API_KEY_CREATED = "api_key_created"


class SecurityEventLog:
    """Append and read raw security events for a project."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    def record(
        self,
        project_id: str,
        event_type: SecurityEventType | str,
        payload: str | None = None,
        source_ip: str | None = None,
        occurred_at: datetime | None = None,
    ) -> SecurityEvent:
        """
        Append an event.

        Args:
            project_id: Project identifier
            event_type: Event kind
            payload: Query text or other free-form detail
            source_ip: Client address when known
            occurred_at: Event time (defaults to now)

        Returns:
            The stored SecurityEvent
        """
        event = SecurityEvent(
            project_id=project_id,
            event_type=SecurityEventType(event_type).value,
            payload=payload,
            source_ip=source_ip,
            occurred_at=occurred_at or utcnow(),
        )
        with self._db.get_session() as session:
            session.add(event)
        return event

    def get_events(
        self,
        project_id: str,
        event_type: SecurityEventType | str,
        since: datetime,
        limit: int | None = None,
    ) -> list[SecurityEvent]:
        """Events of one kind recorded at or after ``since``, newest first."""
        with self._db.get_session() as session:
            query = (
                session.query(SecurityEvent)
                .filter(SecurityEvent.project_id == project_id)
                .filter(SecurityEvent.event_type == SecurityEventType(event_type).value)
                .filter(SecurityEvent.occurred_at >= since)
                .order_by(SecurityEvent.occurred_at.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def count_events(self, project_id: str, event_type: SecurityEventType | str, since: datetime) -> int:
        """Number of events of one kind recorded at or after ``since``."""
        with self._db.get_session() as session:
            return (
                session.query(SecurityEvent)
                .filter(SecurityEvent.project_id == project_id)
                .filter(SecurityEvent.event_type == SecurityEventType(event_type).value)
                .filter(SecurityEvent.occurred_at >= since)
                .count()
            )
