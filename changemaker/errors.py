"""
changemaker.errors — Service-Layer Error Taxonomy
==================================================

Services raise these; route handlers translate them to HTTP status codes
with :func:`http_status_for`.
"""

from __future__ import annotations


class DatabaseError(Exception):
    """Base class for failures raised from the service layer."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(DatabaseError):
    def __init__(self, message: str) -> None:
        super().__init__(message, "VALIDATION_ERROR")


class WorkspaceAccessError(DatabaseError):
    def __init__(self, workspace_id: str) -> None:
        super().__init__(
            f"Access denied to workspace: {workspace_id}", "WORKSPACE_ACCESS_DENIED"
        )


class ResourceNotFoundError(DatabaseError):
    def __init__(self, resource: str, resource_id: str, message: str | None = None) -> None:
        super().__init__(message or f"{resource} not found: {resource_id}", "RESOURCE_NOT_FOUND")
        self.resource = resource
        self.resource_id = resource_id


def http_status_for(exc: DatabaseError) -> int:
    """Map a service error onto the HTTP status the API returns for it."""
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, WorkspaceAccessError):
        return 403
    if isinstance(exc, ResourceNotFoundError):
        return 404
    return 500
