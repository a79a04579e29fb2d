"""
Domain exceptions.
Each carries an error_code and the HTTP status the API layer maps it to.
"""


class QuoteDeskError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    default_code: str = "ERR_INTERNAL"

    def __init__(self, message: str, error_code: str | None = None):
        self.message = message
        self.error_code = error_code or self.default_code
        super().__init__(message)


class NotFoundError(QuoteDeskError):
    """Quote, file, order or review does not exist."""
    status_code = 404
    default_code = "ERR_NOT_FOUND"


class ValidationFailed(QuoteDeskError):
    """Request is well-formed but violates a business rule."""
    status_code = 400
    default_code = "ERR_VALIDATION"


class InvalidStateError(QuoteDeskError):
    """Entity is not in a state that allows the requested operation."""
    status_code = 409
    default_code = "ERR_INVALID_STATE"

    def __init__(self, message: str, error_code: str | None = None, status_code: int | None = None):
        super().__init__(message, error_code)
        if status_code is not None:
            self.status_code = status_code


class PermissionDenied(QuoteDeskError):
    status_code = 403
    default_code = "ERR_FORBIDDEN"


class ConfigurationError(QuoteDeskError):
    """Required configuration (API key, table) is missing."""
    status_code = 500
    default_code = "ERR_CONFIGURATION"


class ParseError(QuoteDeskError):
    """No JSON object could be located in model output."""
    status_code = 502
    default_code = "ERR_PARSE"


class VisionServiceError(QuoteDeskError):
    status_code = 502
    default_code = "ERR_VISION_SERVICE"


class PaymentGatewayError(QuoteDeskError):
    status_code = 502
    default_code = "ERR_PAYMENT_GATEWAY"


class EmailDeliveryError(QuoteDeskError):
    status_code = 502
    default_code = "ERR_EMAIL_DELIVERY"
