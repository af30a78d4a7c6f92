"""Errors raised by the finance tracker services.

The HTTP-facing errors subclass the matching ``werkzeug.exceptions`` classes
so service code can raise them directly and the Flask error handler renders
them as JSON with the right status code.
"""

from werkzeug.exceptions import BadRequest, Conflict, Forbidden, NotFound, Unauthorized


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


class AuthenticationRequired(Unauthorized):
    description = "Unauthorized"


class PermissionDenied(Forbidden):
    description = "You don't have permission to perform this action"


class EntityNotFound(NotFound):
    description = "Not found"


class ValidationError(BadRequest):
    description = "Invalid request data"


class DuplicateTransactionError(Conflict):
    description = (
        "Duplicate transaction: A transaction with the same date, vendor, amount, and type already exists"
    )

    def __init__(self, duplicate_id=None, description=None):
        super().__init__(description=description)
        self.duplicate_id = duplicate_id


class InvalidTransitionError(Conflict):
    description = "Invitation can no longer change status"


def error_payload(exc):
    payload = {"error": exc.description}
    duplicate_id = getattr(exc, "duplicate_id", None)
    if duplicate_id is not None:
        payload["duplicate_id"] = duplicate_id
    return payload
