"""Persistence for per-project hard cap configuration."""

import logging
from typing import Any

from capguard.caps import DEFAULT_HARD_CAPS, HardCapType, parse_cap_type, validate_cap_value
from capguard.db.manager import DatabaseManager
from capguard.db.models import ProjectQuota

logger = logging.getLogger(__name__)


class QuotaStore:
    """
    CRUD over the project_quotas table.

    Rows are optional: a cap type with no row resolves to its platform
    default. Project existence is never checked, so caps can be written
    before the project itself is provisioned.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        """
        Initialize the store.

        Args:
            db_manager: Database manager providing sessions
        """
        self._db = db_manager

    def get(self, project_id: str, cap_type: HardCapType | str) -> ProjectQuota | None:
        """
        Get the configured quota row for a cap type.

        Args:
            project_id: Project identifier
            cap_type: Cap type to look up

        Returns:
            ProjectQuota or None when the project uses the default
        """
        cap = parse_cap_type(cap_type)
        with self._db.get_session() as session:
            return (
                session.query(ProjectQuota)
                .filter(ProjectQuota.project_id == project_id)
                .filter(ProjectQuota.cap_type == cap.value)
                .first()
            )

    def get_all(self, project_id: str) -> list[ProjectQuota]:
        """Get every configured quota row for a project, ordered by cap type."""
        with self._db.get_session() as session:
            return (
                session.query(ProjectQuota)
                .filter(ProjectQuota.project_id == project_id)
                .order_by(ProjectQuota.cap_type)
                .all()
            )

    def get_limit(self, project_id: str, cap_type: HardCapType | str) -> int:
        """
        Get the effective limit: the configured value, else the default.

        Args:
            project_id: Project identifier
            cap_type: Cap type to resolve

        Returns:
            Effective cap value
        """
        cap = parse_cap_type(cap_type)
        quota = self.get(project_id, cap)
        if quota is not None:
            return quota.cap_value
        return DEFAULT_HARD_CAPS[cap]

    def set(self, project_id: str, cap_type: HardCapType | str, value: Any) -> ProjectQuota:
        """
        Create or update the quota for a cap type.

        Args:
            project_id: Project identifier
            cap_type: Cap type to set
            value: New cap value, an integer within bounds

        Returns:
            The stored ProjectQuota

        Raises:
            ValidationError: If the cap type or value is invalid
        """
        cap = parse_cap_type(cap_type)
        cap_value = validate_cap_value(value)

        with self._db.get_session() as session:
            quota = self._upsert(session, project_id, cap, cap_value)

        logger.info(f"Set {cap.value}={cap_value} for project {project_id}")
        return quota

    def set_many(self, project_id: str, values: dict[HardCapType | str, Any]) -> list[ProjectQuota]:
        """
        Set several caps in one transaction.

        Every entry is validated before anything is written, so a bad entry
        leaves all caps untouched.
        """
        validated = [
            (parse_cap_type(cap_type), validate_cap_value(value))
            for cap_type, value in values.items()
        ]

        with self._db.get_session() as session:
            quotas = [
                self._upsert(session, project_id, cap, cap_value)
                for cap, cap_value in validated
            ]

        logger.info(f"Set {len(quotas)} caps for project {project_id}")
        return quotas

    def apply_defaults(self, project_id: str) -> int:
        """
        Insert a default row for every cap type the project has no row for.

        Existing values, custom or default, are left as they are.

        Returns:
            Number of rows inserted
        """
        with self._db.get_session() as session:
            existing = {
                row.cap_type
                for row in session.query(ProjectQuota.cap_type)
                .filter(ProjectQuota.project_id == project_id)
                .all()
            }

            inserted = 0
            for cap, default_value in DEFAULT_HARD_CAPS.items():
                if cap.value in existing:
                    continue
                session.add(
                    ProjectQuota(
                        project_id=project_id,
                        cap_type=cap.value,
                        cap_value=default_value,
                    )
                )
                inserted += 1

        if inserted:
            logger.info(f"Applied {inserted} default caps to project {project_id}")
        return inserted

    def reset(self, project_id: str) -> int:
        """
        Delete all configured caps and re-apply the defaults.

        Returns:
            Number of default rows inserted
        """
        with self._db.get_session() as session:
            deleted = (
                session.query(ProjectQuota)
                .filter(ProjectQuota.project_id == project_id)
                .delete(synchronize_session=False)
            )
        logger.info(f"Reset caps for project {project_id} ({deleted} removed)")
        return self.apply_defaults(project_id)

    def delete(self, project_id: str, cap_type: HardCapType | str) -> bool:
        """
        Delete one cap row so reads fall back to the default.

        Returns:
            True if a row was deleted, False if none existed
        """
        cap = parse_cap_type(cap_type)
        with self._db.get_session() as session:
            deleted = (
                session.query(ProjectQuota)
                .filter(ProjectQuota.project_id == project_id)
                .filter(ProjectQuota.cap_type == cap.value)
                .delete(synchronize_session=False)
            )
        return deleted > 0

    def has_quotas_configured(self, project_id: str) -> bool:
        """Check whether the project has any quota rows."""
        with self._db.get_session() as session:
            return (
                session.query(ProjectQuota.id)
                .filter(ProjectQuota.project_id == project_id)
                .first()
                is not None
            )

    def get_quota_stats(self, project_id: str) -> list[dict[str, Any]]:
        """
        Describe every cap type for a project.

        Returns:
            One dict per cap type with the effective value and whether it
            matches the platform default
        """
        configured = {row.cap_type: row.cap_value for row in self.get_all(project_id)}
        stats = []
        for cap, default_value in DEFAULT_HARD_CAPS.items():
            value = configured.get(cap.value, default_value)
            stats.append({
                "cap_type": cap.value,
                "cap_value": value,
                "default_value": default_value,
                "configured": cap.value in configured,
                "is_default": value == default_value,
            })
        return stats

    def _upsert(self, session: Any, project_id: str, cap: HardCapType, cap_value: int) -> ProjectQuota:
        quota = (
            session.query(ProjectQuota)
            .filter(ProjectQuota.project_id == project_id)
            .filter(ProjectQuota.cap_type == cap.value)
            .first()
        )
        if quota is None:
            quota = ProjectQuota(project_id=project_id, cap_type=cap.value, cap_value=cap_value)
            session.add(quota)
        else:
            quota.cap_value = cap_value
        session.flush()
        return quota
