"""Error types shared by the question cache, blob store, and progress ledger.

The API layer maps each of these to an HTTP status in one place
(see ``apprep.index``), so services raise them without knowing about HTTP.
"""


class AppError(Exception):
    """Base class for errors the API knows how to report."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GenerationError(AppError):
    """The question generator failed, refused, returned bad output, or timed out."""

    status_code = 502


class StorageError(AppError):
    """Reading from or writing to the blob store failed."""

    status_code = 503


class NotFoundError(AppError):
    """A requested question, user, or other entity does not exist."""

    status_code = 404


class ValidationError(AppError):
    """The caller supplied malformed or incomplete input."""

    status_code = 400
