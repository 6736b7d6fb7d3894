"""Error taxonomy shared by every service.

Each error carries a ``kind`` (a short machine-readable name) and the HTTP
status the API layer answers with. Services raise these; only ``api.py``
turns them into responses.
"""

from typing import Optional


class LibraryError(Exception):
    kind = "internal"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class Unauthorized(LibraryError):
    kind = "unauthorized"
    status_code = 401
    default_message = "Access denied"


class Forbidden(LibraryError):
    kind = "forbidden"
    status_code = 403
    default_message = "Operation not permitted for this role"


class NotFound(LibraryError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class Conflict(LibraryError):
    kind = "conflict"
    status_code = 409
    default_message = "Resource already exists"


class InvalidInput(LibraryError):
    kind = "invalid_input"
    status_code = 400
    default_message = "Invalid input"


class Unavailable(LibraryError):
    kind = "unavailable"
    status_code = 503
    default_message = "Data store unavailable"


class Internal(LibraryError):
    pass
