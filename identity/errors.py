"""
identity/errors.py -- Error kinds raised inside the engine.

Every failure the engine can report is one of these. AuthService converts
them into failed OperationResults at its boundary; callers of the service
never see them raised. Store ports raise them directly.

status is the suggested protocol status for a request layer. It stays
coarse where a precise code would reveal which check failed:
DuplicateError maps to 400, not 409, and AuthenticationError always carries
the same message whichever sub-check failed.
"""

from __future__ import annotations

from http import HTTPStatus


class IdentityError(Exception):
    """Base class for engine errors. kind is a stable machine-readable tag."""

    kind: str = "error"
    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    default_message: str = "Identity operation failed."

    def __init__(self, message: str | None = None, *, fields: list[str] | None = None) -> None:
        self.message = message or self.default_message
        self.fields = fields or []
        super().__init__(self.message)


class ValidationError(IdentityError):
    """Missing or malformed parameters. User-correctable."""

    kind = "validation"
    status = HTTPStatus.BAD_REQUEST
    default_message = "Invalid parameters supplied."


class DuplicateError(IdentityError):
    """A uniqueness constraint rejected the write."""

    kind = "duplicate"
    status = HTTPStatus.BAD_REQUEST
    default_message = "A record with those details already exists."


class AuthenticationError(IdentityError):
    """Credential mismatch or unknown identity.

    The message is fixed. Callers must not pass a reason -- log it instead.
    """

    kind = "authentication"
    status = HTTPStatus.UNAUTHORIZED
    default_message = "Invalid credentials supplied."

    def __init__(self) -> None:
        super().__init__()


class AuthorizationError(IdentityError):
    """The acting identity lacks the required role."""

    kind = "authorization"
    status = HTTPStatus.FORBIDDEN
    default_message = "You are not allowed to perform this operation."


class NotFoundError(IdentityError):
    """A referenced entity does not exist."""

    kind = "not_found"
    status = HTTPStatus.NOT_FOUND
    default_message = "The requested account could not be found."


class PersistenceError(IdentityError):
    """The backing store failed."""

    kind = "persistence"
    status = HTTPStatus.INTERNAL_SERVER_ERROR
    default_message = "A storage error occurred, please try again later."
