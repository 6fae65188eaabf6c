"""Custom exceptions for the campaign execution engine."""


class CampaignException(Exception):
    """Base exception for the campaign execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(CampaignException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(CampaignException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class ConflictError(CampaignException):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


# ─── Engine error taxonomy ─────────────────────────────────────


class FlowValidationError(ValidationError):
    """Malformed flow or node data. Fatal, never retried."""

    def __init__(self, message: str = "Invalid flow definition", warnings: list[str] = None):
        super().__init__(message)
        self.warnings = warnings or []


class DeliveryError(CampaignException):
    """The delivery collaborator could not dispatch an action."""

    retryable: bool = False

    def __init__(self, message: str = "Delivery failed"):
        super().__init__(message, 502)


class TransientDeliveryError(DeliveryError):
    """Retryable delivery failure (provider outage, rate limit, timeout)."""

    retryable = True


class PermanentDeliveryError(DeliveryError):
    """Non-retryable delivery failure (malformed recipient, rejected content)."""

    retryable = False


class StructuralError(CampaignException):
    """The run cannot continue: loop guard tripped or a node is missing."""

    def __init__(self, message: str = "Structural error in flow"):
        super().__init__(message, 500)
