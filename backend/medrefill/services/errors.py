"""Domain errors raised by the workflow services.

Routes never translate these themselves; ``main.py`` registers a single handler
that responds with ``status_code`` and a ``{"detail": ...}`` body.
"""

from uuid import UUID


class WorkflowError(Exception):
    """Base class; ``status_code`` is the HTTP status the API responds with."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WorkflowError):
    """Malformed input: bad address fields, unknown status, empty line items."""

    status_code = 400


class PermissionDeniedError(WorkflowError):
    """Caller's role or ownership does not allow the operation."""

    status_code = 403


class NotFoundError(WorkflowError):
    """Unknown prescription, request, medicine, user or inventory row."""

    status_code = 404


class ConflictError(WorkflowError):
    """Entity is not in the state the operation requires."""

    status_code = 409


class InsufficientStock(ConflictError):
    def __init__(self, medicine_id: UUID, medicine_name: str | None = None, available: int = 0, needed: int = 0):
        label = medicine_name or str(medicine_id)
        super().__init__(
            f"Insufficient stock for medicine: {label} (available {available}, needed {needed})"
        )
        self.medicine_id = medicine_id
        self.medicine_name = medicine_name
        self.available = available
        self.needed = needed
