from typing import Dict, List, Optional


class BillingError(Exception):
    """Base class for errors raised by the billing services."""

    default_message = "Billing operation failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(BillingError):
    default_message = "Resource not found"

    @classmethod
    def for_resource(cls, resource: str, identifier) -> "NotFound":
        return cls(f"{resource} {identifier} not found")


class InvalidState(BillingError):
    default_message = "Operation not allowed in the current status"


class ValidationFailure(BillingError):
    default_message = "Validation failed"

    def __init__(self, errors: Dict[str, List[str]], message: Optional[str] = None):
        self.errors = errors
        super().__init__(message or self.default_message)


class GatewayFailure(BillingError):
    """An external payment, email or storage call failed."""

    default_message = "External service call failed"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, status_code: Optional[int] = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class WebhookSignatureError(BillingError):
    default_message = "Invalid webhook signature"
