"""
Billing Exceptions

Custom exception classes for subscription-related errors.
These provide structured error handling across the billing module; the API
layer renders them through `to_dict()` with each class's `status_code`.
"""


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    All billing exceptions inherit from this class, allowing for
    broad exception handling when needed.
    """

    kind = "INTERNAL"
    status_code = 500

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.kind,
            'code': self.code,
            'message': self.message,
            'details': self.details
        }


class InvalidInputError(BillingError):
    """Raised for a missing or malformed user id, plan or feature."""

    kind = "INVALID_INPUT"
    status_code = 400

    def __init__(self, message: str = "Invalid input", code: str = "INVALID_INPUT", field: str = None):
        super().__init__(
            message=message,
            code=code,
            details={'field': field} if field else {}
        )
        self.field = field


class NotFoundError(BillingError):
    """Raised when a user, subscription or invoice is unknown."""

    kind = "NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND", details: dict = None):
        super().__init__(message=message, code=code, details=details)


class ConflictError(BillingError):
    """
    Raised when the requested transition conflicts with the current state.

    Examples:
        - Subscription already active
        - Subscription still processing
        - Subscription created moments ago (details carry the payment link)
    """

    kind = "CONFLICT"
    status_code = 409

    def __init__(self, message: str = "Conflict", code: str = "CONFLICT", details: dict = None):
        super().__init__(message=message, code=code, details=details)


class AccessDeniedError(BillingError):
    """Raised when a gated feature is used without access."""

    kind = "ACCESS_DENIED"
    status_code = 403

    def __init__(self, message: str = "Access denied", reason: str = None, details: dict = None):
        details = dict(details or {})
        if reason:
            details['reason'] = reason
        super().__init__(message=message, code="ACCESS_DENIED", details=details)
        self.reason = reason


class UpstreamUnavailableError(BillingError):
    """
    Raised when the payment provider could not be reached after retries.

    Attributes:
        upstream_status: HTTP status returned by the provider, if any
        provider_error: Error body returned by the provider, if any
    """

    kind = "UPSTREAM_UNAVAILABLE"
    status_code = 502

    def __init__(
        self,
        message: str = "Payment provider unavailable",
        code: str = "RAZORPAY_API_ERROR",
        upstream_status: int = None,
        provider_error: dict = None
    ):
        details = {}
        if upstream_status:
            details['upstream_status'] = upstream_status
        if provider_error:
            details['provider_error'] = provider_error
        super().__init__(message=message, code=code, details=details)
        self.upstream_status = upstream_status
        self.provider_error = provider_error

    @property
    def is_client_error(self) -> bool:
        return self.upstream_status is not None and 400 <= self.upstream_status < 500


class CircuitBreakerOpenError(UpstreamUnavailableError):
    """Raised when the circuit breaker is open and preventing calls."""

    status_code = 503

    def __init__(
        self,
        message: str = "Circuit breaker is open. Service temporarily unavailable.",
        service_name: str = "razorpay",
        reset_time: float = None
    ):
        super().__init__(message=message, code="CIRCUIT_BREAKER_OPEN")
        self.details.update({
            'service_name': service_name,
            'reset_time': reset_time
        })
        self.service_name = service_name
        self.reset_time = reset_time


class WebhookError(BillingError):
    """
    Raised when there's an issue processing a webhook.

    Examples:
        - Invalid signature
        - Handler failed after verification
    """

    def __init__(
        self,
        message: str = "Webhook processing error",
        code: str = "WEBHOOK_ERROR",
        event_id: str = None,
        event_type: str = None
    ):
        details = {}
        if event_id:
            details['event_id'] = event_id
        if event_type:
            details['event_type'] = event_type

        super().__init__(
            message=message,
            code=code,
            details=details
        )
        self.event_id = event_id
        self.event_type = event_type


class WebhookVerificationError(WebhookError):
    """Signature missing or mismatched; the event is refused."""

    kind = "WEBHOOK_VERIFICATION_FAILED"
    status_code = 400

    def __init__(self, message: str = "Invalid webhook signature", event_type: str = None):
        super().__init__(message=message, code="WEBHOOK_VERIFICATION_FAILED", event_type=event_type)


class WebhookProcessingError(WebhookError):
    """Handler failed after verification; the provider should redeliver."""

    kind = "WEBHOOK_PROCESSING_FAILED"
    status_code = 500

    def __init__(
        self,
        message: str = "Webhook processing failed",
        event_id: str = None,
        event_type: str = None,
        dead_letter_id: int = None
    ):
        super().__init__(
            message=message,
            code="WEBHOOK_PROCESSING_FAILED",
            event_id=event_id,
            event_type=event_type
        )
        if dead_letter_id is not None:
            self.details['dead_letter_id'] = dead_letter_id
        self.dead_letter_id = dead_letter_id


class SessionError(BillingError):
    """Raised when a bearer token is missing, unknown or expired."""

    kind = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Invalid or expired session", code: str = "SESSION_INVALID"):
        super().__init__(message=message, code=code)
