"""
Screening error taxonomy.

Raised by the services and translated to HTTP responses by the routers.
"""
from __future__ import annotations


class ScreeningError(Exception):
    """Base class for every error the screening core raises."""


class NotFoundError(ScreeningError):
    def __init__(self, resource: str, resource_id: object = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource} not found"
        if resource_id is not None:
            msg = f"{resource} {resource_id} not found"
        super().__init__(msg)


class ValidationError(ScreeningError):
    """Duplicate vote, quota exceeded, or an impossible phase target."""


class AlreadyResolvedError(ScreeningError):
    def __init__(self, conflict_id: object) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"Conflict {conflict_id} has already been resolved")


class PrerequisiteError(ScreeningError):
    """Phase-entry prerequisite missing; carries the number of blocking studies."""

    def __init__(self, blocking_count: int, message: str) -> None:
        self.blocking_count = blocking_count
        super().__init__(message)


class ConflictingWriteError(ScreeningError):
    """A unique constraint rejected a concurrent write."""
