"""Domain errors raised by the service layer.

Each error carries the HTTP status the API reports for it, so routers never
translate errors by hand.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ServiceError):
    """Referenced user, task or tag does not exist or is soft-deleted."""

    status_code = 404


class InvalidArgumentError(ServiceError):
    """Request fields violate a constraint."""

    status_code = 400


class PermissionDeniedError(ServiceError):
    """Acting user may not touch the resource."""

    status_code = 403


class ConflictError(ServiceError):
    """Unique value already taken."""

    status_code = 409


class InternalError(ServiceError):
    """Relational transaction failed and was rolled back."""

    status_code = 500
