"""Service-level error taxonomy.

Each error carries the HTTP status the REST layer answers with, so routes can
let them propagate and ``main.py`` renders them uniformly.
"""


class ServiceError(Exception):
    """Base class for errors raised by the service layer."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Missing or malformed input, rejected before any side effect."""

    status_code = 400


class NotFoundError(ServiceError):
    """Unknown peer or transfer record."""

    status_code = 404


class UnauthorizedError(ServiceError):
    """The requester does not own the record it tried to change."""

    status_code = 403


class UpstreamError(ServiceError):
    """The blob store or another external dependency failed."""

    status_code = 502
