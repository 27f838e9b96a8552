class LibraryError(Exception):
    """Base exception for library service errors."""

    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    """Missing or malformed input."""

    status_code = 400


class InvalidState(LibraryError):
    """Operation is illegal for the entity's current state."""

    status_code = 400


class NotFound(LibraryError):
    """Requested entity does not exist."""

    status_code = 404


class Conflict(LibraryError):
    """Resource is unavailable, e.g. a book already checked out."""

    status_code = 409


class Unavailable(LibraryError):
    """The store could not be reached; callers may retry with backoff."""

    status_code = 503
