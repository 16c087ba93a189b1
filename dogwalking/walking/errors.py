"""Exceptions raised by the dog walking core."""

from __future__ import annotations


class DogWalkingError(RuntimeError):
    """Base class for errors surfaced to callers."""

    status_code = 500


class ValidationError(DogWalkingError):
    """Raised when incoming data fails validation."""

    status_code = 400


class NotFoundError(DogWalkingError):
    """Raised when a referenced record does not exist."""

    status_code = 404


class AuthenticationError(DogWalkingError):
    """Raised when credentials are missing or invalid."""

    status_code = 401


class AuthorizationError(DogWalkingError):
    """Raised when a user action is not permitted."""

    status_code = 403


class ConflictError(DogWalkingError):
    """Raised when an operation does not fit the current state of a record."""

    status_code = 409
