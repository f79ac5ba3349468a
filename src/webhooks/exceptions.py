"""Webhook registry and delivery errors"""

from typing import Optional


class WebhookError(Exception):
    """Base class for registry errors surfaced to the caller"""
    status_code = 400
    code = "WEBHOOK_ERROR"

    def to_dict(self):
        return {"error": type(self).__name__, "code": self.code, "message": str(self)}


class WebhookValidationError(WebhookError):
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid {field}: {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self):
        data = super().to_dict()
        data.update(field=self.field, reason=self.reason)
        return data


class DuplicateRegistration(WebhookError):
    status_code = 409
    code = "DUPLICATE_WEBHOOK"

    def __init__(self, url: str):
        super().__init__("Webhook with this URL already exists")
        self.url = url


class RegistrationLimitExceeded(WebhookError):
    status_code = 409
    code = "WEBHOOK_LIMIT_EXCEEDED"

    def __init__(self, limit: int):
        super().__init__(f"Maximum webhooks per principal ({limit}) exceeded")
        self.limit = limit


class WebhookNotFound(WebhookError):
    status_code = 404
    code = "WEBHOOK_NOT_FOUND"

    def __init__(self, webhook_id: str):
        super().__init__("Webhook not found")
        self.webhook_id = webhook_id


class WebhookUnauthorized(WebhookError):
    status_code = 403
    code = "WEBHOOK_FORBIDDEN"

    def __init__(self, webhook_id: str):
        super().__init__("You do not have access to this webhook")
        self.webhook_id = webhook_id


class DeliveryError(Exception):
    """A single failed HTTP attempt"""
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DeliveryTimeout(DeliveryError):
    pass


class DeliveryNetworkError(DeliveryError):
    pass


class DeliveryHTTPError(DeliveryError):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}", status_code=status_code)
        self.retryable = status_code >= 500


class DeliveryExhausted(DeliveryError):
    """Every attempt of a retry chain failed"""
    retryable = False

    def __init__(self, delivery_id: str, attempts: int, last_error: DeliveryError):
        super().__init__(
            f"Delivery failed after {attempts} attempt(s): {last_error}",
            status_code=last_error.status_code,
        )
        self.delivery_id = delivery_id
        self.attempts = attempts
        self.last_error = last_error
