"""Typed service errors, rendered as ``{"error": message}`` by the app."""
from __future__ import annotations


class VirionError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(VirionError):
    status_code = 400
    default_message = "Invalid request"


class UnknownActionError(ValidationError):
    default_message = "Invalid action. Must be start, stop, or restart"


class NotFoundError(VirionError):
    status_code = 404
    default_message = "Not found"


class InactiveError(VirionError):
    status_code = 400
    default_message = "Referral link is inactive"


class ExpiredError(VirionError):
    status_code = 400
    default_message = "Referral link has expired"


class DuplicateError(VirionError):
    status_code = 409
    default_message = "Already exists"


class StorageError(VirionError):
    status_code = 500
    default_message = "Database operation failed"


class DashboardTimeoutError(VirionError):
    status_code = 504
    default_message = "Data loading timed out. Please try refreshing."
