"""Domain exceptions and their HTTP status mapping."""
from __future__ import annotations

from typing import Any, Dict, Optional

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."


class StorefrontError(Exception):
    """Base class for every error the API turns into a JSON envelope."""

    status_code: int = 500
    # 5xx messages are hidden in production unless the error is meant for the customer
    user_facing: bool = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors

    def public_message(self, debug: bool = False) -> str:
        if self.status_code < 500 or self.user_facing or debug:
            return self.message
        return GENERIC_ERROR_MESSAGE

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.public_message(debug)}
        if self.errors is not None:
            body["errors"] = self.errors
        return body


class ValidationError(StorefrontError):
    status_code = 400


class StockUnavailable(StorefrontError):
    status_code = 400

    def __init__(self, message: str, product_id: Optional[int] = None) -> None:
        super().__init__(message, errors={"product_id": product_id} if product_id is not None else None)
        self.product_id = product_id


class AuthenticationError(StorefrontError):
    status_code = 401


class AuthorizationError(StorefrontError):
    status_code = 403


class NotFoundError(StorefrontError):
    status_code = 404


class ConflictError(StorefrontError):
    status_code = 409


class InvalidStateTransition(StorefrontError):
    status_code = 409

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class TooManyAttempts(StorefrontError):
    status_code = 429

    def __init__(self, retry_after: int, message: str = "Too many attempts. Please try again later.") -> None:
        super().__init__(message, errors={"retry_after": retry_after})
        self.retry_after = retry_after


class VendorApiError(StorefrontError):
    status_code = 502

    def __init__(self, message: str, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.http_status = http_status


class CarrierApiError(StorefrontError):
    status_code = 502


class ReservationFailure(StorefrontError):
    status_code = 502
    user_facing = True

    DEFAULT_MESSAGE = (
        "Payment successful but product reservation failed. Please contact support."
    )

    def __init__(self, message: str = DEFAULT_MESSAGE, failures: Optional[list] = None) -> None:
        super().__init__(message)
        # Kept for logs and support tooling, never rendered to the customer
        self.failures = failures or []
