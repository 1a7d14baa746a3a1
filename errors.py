"""
Error Taxonomy

Every failure surfaced by the API is one of these. The HTTP layer renders
them as {"message": ..., "error": ...} with the class status code.
"""

from typing import Any, Optional


class BookstoreError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None, error: Any = None):
        self.message = message or self.default_message
        self.error = error if error is not None else type(self).__name__
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"message": self.message, "error": self.error}


class NotFound(BookstoreError):
    status_code = 404
    default_message = "Not found"


class InvalidArgument(BookstoreError):
    status_code = 400
    default_message = "Invalid argument"


class AlreadyExists(InvalidArgument):
    default_message = "Already exists"


class InvalidState(BookstoreError):
    status_code = 400
    default_message = "Invalid state"


class Unauthorized(BookstoreError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(BookstoreError):
    status_code = 403
    default_message = "Access denied"


class Conflict(BookstoreError):
    status_code = 409
    default_message = "Concurrent modification, please retry"


class Internal(BookstoreError):
    status_code = 500


class Timeout(BookstoreError):
    status_code = 504
    default_message = "Operation timed out"
