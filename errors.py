"""Exceptions raised by the shop services.

Every error carries the HTTP status it maps to; the handlers in ``main``
turn them into the ``{"success": false, "message": ...}`` envelope.
"""


class ShopError(Exception):
    """Base exception for all shop errors."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ShopError):
    """Missing or malformed input."""

    status_code = 400


class AuthenticationError(ShopError):
    """Missing, invalid or expired credentials."""

    status_code = 401


class AuthorizationError(ShopError):
    """Caller is authenticated but may not touch the resource."""

    status_code = 403


class NotFoundError(ShopError):
    status_code = 404


class InsufficientStock(ShopError):
    status_code = 400


class InsufficientFunds(ShopError):
    status_code = 400


class InvalidTransition(ShopError):
    """Requested order status change is not allowed from the current state."""

    status_code = 400

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot change order status from {current} to {target}")


class UpstreamError(ShopError):
    """Payment provider, mail transport or renderer failure."""

    status_code = 500
