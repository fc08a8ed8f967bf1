"""Error taxonomy shared by the content and journal services."""
from __future__ import annotations


class RenewedError(Exception):
    """Base error for the guidebook services."""

    status_code = 500


class NotFoundError(RenewedError):
    """Raised when the requested section, visual or entry does not exist."""

    status_code = 404


class UnauthorizedError(RenewedError):
    """Raised when the caller has no valid session."""

    status_code = 401


class ValidationFailedError(RenewedError):
    """Raised when a request carries malformed or out-of-range input."""

    status_code = 400


class UpstreamFailureError(RenewedError):
    """Raised when the hosted backend returns an error or is unreachable."""

    status_code = 502


__all__ = [
    "RenewedError",
    "NotFoundError",
    "UnauthorizedError",
    "ValidationFailedError",
    "UpstreamFailureError",
]
