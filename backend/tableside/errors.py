# Overview: Domain error taxonomy shared by services and routes.

"""
Tableside error types.

Services raise these; routes translate them with `to_dict()` and
`status_code`. Guard failures carry the current authoritative state so the
caller can re-render without guessing.
"""

from __future__ import annotations

from typing import Any


class TablesideError(Exception):
    """Base class for expected, client-visible failures."""

    status_code = 500
    code = "ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class NotFoundError(TablesideError):
    """Unknown table, order, payment or waiter call id."""

    status_code = 404
    code = "NOT_FOUND"


class ValidationError(TablesideError):
    """400-level input problem."""

    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidActionError(TablesideError):
    """Unrecognized transition event."""

    status_code = 400
    code = "INVALID_ACTION"

    def __init__(self, action: Any, allowed=None):
        message = f"Invalid action: {action!r}"
        if allowed:
            message += f". Must be one of: {', '.join(sorted(allowed))}"
        super().__init__(message)
        self.action = action


class AccessDeniedError(TablesideError):
    """
    Token missing/expired/mismatched, or the table status forbids the action.

    `reason` is machine-readable so clients can choose between asking for a
    new token and waiting.
    """

    status_code = 403
    code = "ACCESS_DENIED"

    def __init__(self, reason: str, message: str, *, requires_new_token: bool = False):
        super().__init__(message)
        self.reason = reason
        self.requires_new_token = requires_new_token

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "reason": self.reason,
            "requiresNewToken": self.requires_new_token,
            "message": self.message,
        }


class ConflictError(TablesideError):
    """Guard failed against the freshly read state. Safe to retry after re-reading."""

    status_code = 409
    code = "CONFLICT"

    def __init__(self, message: str, *, current: dict | None = None):
        super().__init__(message)
        self.current = current

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.current is not None:
            data["current"] = self.current
        return data


class ProviderError(TablesideError):
    """Payment provider call failed or answered with something unusable."""

    status_code = 502
    code = "PROVIDER_ERROR"
