from __future__ import annotations


class PosError(Exception):
    code = 'pos_error'

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {'code': self.code, 'message': self.message, 'details': self.details}


class PreconditionViolation(PosError, ValueError):
    """An operation is not legal for the current order or shift state."""

    code = 'precondition_failed'


class UserFacingError(PreconditionViolation):
    """Recoverable input problem the cashier can correct and retry."""

    code = 'invalid_input'


class NotFoundError(PosError, LookupError):
    code = 'not_found'


class AccessDenied(PosError, PermissionError):
    code = 'access_denied'


class ConcurrencyConflict(PosError):
    """The record changed underneath the caller; reload and retry."""

    code = 'stale_order'


class KitchenNotificationError(PosError):
    code = 'kitchen_unavailable'
