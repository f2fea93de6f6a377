from django.core.exceptions import ValidationError


__all__ = [
    "ValidationError",
    "ServiceError",
    "Unauthorized",
    "Forbidden",
    "NotFoundError",
    "AlreadyProvisionedError",
    "PaymentNotCompletedError",
    "ExternalServiceError",
]


class ServiceError(Exception):
    """Base for errors raised by services and translated to HTTP by core.http."""

    status_code = 500
    default_message = "internal error"

    def __init__(self, message: str = "", **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class Unauthorized(ServiceError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found"


class AlreadyProvisionedError(ServiceError):
    """A membership already exists for the payment (idempotent outcome)."""

    status_code = 409
    default_message = "Membership already provisioned for this payment"


class PaymentNotCompletedError(ServiceError):
    status_code = 409
    default_message = "Payment is not completed"


class ExternalServiceError(ServiceError):
    """Payment gateway or mail transport failure."""

    status_code = 502
    default_message = "External service error"
