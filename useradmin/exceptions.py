"""Error taxonomy shared by the stores, services and HTTP layer."""
from __future__ import annotations


class UserAdminError(RuntimeError):
    """Base class for failures that map onto an HTTP status code."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(UserAdminError):
    """Raised when a request is missing a field or carries a malformed value."""

    status_code = 400


class Conflict(UserAdminError):
    """Raised when a username is already taken."""

    status_code = 400


class UserExistsError(Conflict):
    def __init__(self, username: str) -> None:
        super().__init__(f"User '{username}' already exists")
        self.username = username


class StaleWriteError(Conflict):
    """Raised when a store file changed on disk between load and save."""

    status_code = 409


class NotFound(UserAdminError):
    status_code = 404


class InvalidToken(UserAdminError):
    status_code = 400

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class Expired(UserAdminError):
    status_code = 400

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class StorageError(UserAdminError):
    """Raised when a store file cannot be read, parsed or written."""


class HashingError(UserAdminError):
    """Raised when the external hashing capability fails or times out."""


class Forbidden(UserAdminError):
    status_code = 403


__all__ = [
    "Conflict",
    "Expired",
    "Forbidden",
    "HashingError",
    "InvalidToken",
    "NotFound",
    "StaleWriteError",
    "StorageError",
    "UserAdminError",
    "UserExistsError",
    "ValidationError",
]
