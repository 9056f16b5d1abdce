class LedgerError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 500


class ValidationError(LedgerError, ValueError):
    status_code = 400


class UnauthorizedError(LedgerError):
    status_code = 401


class NotFoundError(LedgerError):
    status_code = 404


class ConflictError(LedgerError):
    status_code = 409


class StorageError(LedgerError):
    status_code = 500
