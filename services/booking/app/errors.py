"""Typed errors raised by the booking lifecycle.

Every error carries a stable ``code`` and the HTTP status an API layer should
answer with, so callers can translate them without inspecting messages.
"""

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    code = "lifecycle_error"
    http_status = 400

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(LifecycleError):
    code = "validation_error"
    http_status = 400


class ConflictError(LifecycleError):
    code = "conflict"
    http_status = 409


class UnavailableError(ConflictError):
    code = "provider_unavailable"


class CapacityExceededError(ConflictError):
    code = "daily_capacity_exceeded"


class InvalidTransitionError(LifecycleError):
    code = "invalid_transition"
    http_status = 409


class NotFoundError(LifecycleError):
    code = "not_found"
    http_status = 404


class CancellationBlockedError(LifecycleError):
    code = "cancellation_blocked"
    http_status = 409


class ExpiredError(LifecycleError):
    code = "expired"
    http_status = 410


class RecurrenceNotActiveError(LifecycleError):
    code = "recurrence_not_active"
    http_status = 409
