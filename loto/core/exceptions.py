"""
Service-layer exception hierarchy.

Services raise these; blueprints register handlers against them once and
map each to a status code and ``api_error`` body. Every domain error here
is raised before the service writes anything, so the surrounding
transaction is rolled back with no partial changes.

Usage:
    from loto.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="LOTO Work Permit", resource_id=42)
    raise ValidationError("No fields to update")
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist.  Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "LOTO Work Permit").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when a request is malformed or carries nothing usable.

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AlreadyFinalizedError(Exception):
    """Raised when a workflow action targets an APPROVED or REJECTED permit.

    Maps to HTTP 400.
    """

    def __init__(self, permit_id: int, status: str, message: str = "Already finalized") -> None:
        self.permit_id = permit_id
        self.status = status
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when a permit's stored workflow state cannot be advanced.

    Covers statuses outside the known set and stages that were already
    signed. Maps to HTTP 400.
    """

    def __init__(self, permit_id: int, status: str | None, reason: str = "Invalid state") -> None:
        self.permit_id = permit_id
        self.status = status
        super().__init__(reason)


class PermissionDeniedError(Exception):
    """Raised when the caller's role may not perform the action.  Maps to HTTP 403.

    Args:
        message: Client-facing explanation.
        role: The caller's role.
        required: Role (or roles) that would have been accepted.
    """

    def __init__(self, message: str, role: str | None = None, required=None) -> None:
        self.role = role
        self.required = required
        super().__init__(message)


class SchemaEvolutionError(Exception):
    """Raised when the workflow columns cannot be verified or added.

    Not actionable by a client; surfaces as a generic HTTP 500.
    """
