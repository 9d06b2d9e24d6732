"""
Service error taxonomy.

Every failure raised by the services carries a stable machine-checkable
``kind`` and the HTTP status the API surfaces it with. The handlers in
``main.py`` render them as ``{"success": false, "error": {...}}`` envelopes.
"""


class ServiceError(Exception):
    status_code = 500
    kind = "UNEXPECTED"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


class ValidationFailure(ServiceError):
    """Malformed or missing input."""
    status_code = 400
    kind = "VALIDATION_FAILED"


class NotFound(ServiceError):
    status_code = 404
    kind = "NOT_FOUND"


class Conflict(ServiceError):
    """Uniqueness violation (duplicate upload, duplicate report, duplicate grant)."""
    status_code = 409
    kind = "CONFLICT"


class StateConflict(Conflict):
    """Status precondition violation, e.g. resolve before acknowledge."""
    status_code = 400
    kind = "INVALID_STATE"


class Unauthorized(ServiceError):
    status_code = 401
    kind = "UNAUTHORIZED"


class Forbidden(ServiceError):
    status_code = 403
    kind = "FORBIDDEN"


_KIND_BY_STATUS = {
    400: "VALIDATION_FAILED",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
}


def kind_for_status(status_code: int) -> str:
    return _KIND_BY_STATUS.get(status_code, "UNEXPECTED")
