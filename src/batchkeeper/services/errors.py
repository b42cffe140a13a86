"""Errors surfaced to the administrative surface (CLI or an HTTP layer)."""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConflictError(ServiceError):
    """The requested work is already in progress. Callers may retry later."""
    status_code = 409


class NotFoundError(ServiceError):
    status_code = 404
