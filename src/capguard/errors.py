"""Exception taxonomy for quota enforcement and suspension."""

from __future__ import annotations

from typing import Any


class CapGuardError(Exception):
    """Base class for all capguard errors."""


class ValidationError(CapGuardError):
    """Rejected input: bad cap value/type, malformed override or reason."""

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class NotFoundError(CapGuardError):
    """A referenced project does not exist."""

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class TransientStoreError(CapGuardError):
    """The backing store failed; the operation may succeed on a later attempt."""
