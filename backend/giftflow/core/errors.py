"""Domain errors raised by the service layer.

Route handlers never translate these by hand: ``giftflow.main`` registers one
exception handler that maps every ``DomainError`` to a JSON response with the
error's ``status_code``.
"""

from fastapi import status


class DomainError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(DomainError):
    """Missing or malformed input, rejected before any mutation."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input"


class AuthorizationError(DomainError):
    """The actor is known but lacks the rights for the operation."""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not allowed"


class NotFoundError(DomainError):
    """Missing record, or a record the actor is not allowed to see."""

    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class ConflictError(DomainError):
    """A state-machine precondition does not hold."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"


class NotificationDeliveryFailure(Exception):
    """Raised inside the notification service only; always caught there."""
