"""
Error taxonomy for the shop API.

Every failure a handler can report is a ``ShopError`` subclass; the application
factory renders them as ``{"message": ..., "error": ...}`` with the class status.
"""
from typing import Dict, Optional


class ShopError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {"message": self.message, "error": self.code}
        if self.details:
            body.update(self.details)
        return body


class InternalError(ShopError):
    pass


class ValidationError(ShopError):
    status_code = 400
    code = "validation_error"
    default_message = "The request contains invalid or missing fields."


class Unauthorized(ShopError):
    status_code = 401
    code = "unauthorized"
    default_message = "Please sign in to continue."


class Forbidden(ShopError):
    status_code = 403
    code = "forbidden"
    default_message = "You need additional permissions to perform this action."


class NotFound(ShopError):
    status_code = 404
    code = "not_found"
    default_message = "The requested resource was not found."


class Conflict(ShopError):
    status_code = 400
    code = "conflict"
    default_message = "This record already exists."


class UpstreamFailure(ShopError):
    status_code = 500
    code = "upstream_failure"
    default_message = "An external service failed. Please try again in a moment."


class InvalidCredentials(Unauthorized):
    code = "invalid_credentials"
    default_message = "Invalid credentials"


class NotVerified(Forbidden):
    code = "not_verified"
    default_message = "Please verify your email before logging in."


class AlreadyVerified(Conflict):
    code = "already_verified"
    default_message = "This account is already verified. Please log in."


class InvalidOrExpiredCode(ValidationError):
    code = "invalid_or_expired_code"
    default_message = "Invalid or expired code."


class LimitExceeded(Conflict):
    code = "limit_exceeded"
    default_message = "The maximum number of records has been reached."


class ProductNotFound(NotFound):
    code = "product_not_found"
    default_message = "Product not found."


class InsufficientStock(Conflict):
    code = "insufficient_stock"
    default_message = "Not enough stock to complete this order."
