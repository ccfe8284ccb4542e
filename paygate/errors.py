from typing import Optional


class PaymentError(Exception):
    code = "UNKNOWN_ERROR"
    status_code = 500
    user_message = "An unexpected error occurred. Please try again or contact support."

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.user_message
        super().__init__(self.detail)


class InvalidSignature(PaymentError):
    code = "INVALID_SIGNATURE"
    status_code = 400
    user_message = "Payment request authentication failed."


class ReplayWindowExceeded(InvalidSignature):
    """Signed request whose timestamp is outside the allowed drift."""


class IdempotencyConflict(PaymentError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409
    user_message = "This payment request conflicts with an earlier request using the same key."


class IdempotencyInProgress(PaymentError):
    code = "IDEMPOTENCY_IN_PROGRESS"
    status_code = 409
    user_message = "An identical payment request is still being processed. Please retry shortly."


class PaymentNotFound(PaymentError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404
    user_message = "Payment not found."


class PaymentExpired(PaymentNotFound):
    """Readers treat an expired payment exactly like a missing one."""

    code = "PAYMENT_EXPIRED"
    user_message = "The payment session has expired. Please start a new payment."


class PaymentMethodMismatch(PaymentError):
    code = "INVALID_ORDER"
    status_code = 400
    user_message = "Payment method does not match the original payment."


class UnsupportedPaymentMethod(PaymentError):
    code = "UNSUPPORTED_PAYMENT_METHOD"
    status_code = 400
    user_message = "This payment method is not supported."


class OrderLookupFailed(PaymentError):
    code = "INVALID_ORDER"
    status_code = 400
    user_message = "Order information is invalid or unavailable."


class GatewayUnavailable(PaymentError):
    code = "GATEWAY_UNAVAILABLE"
    status_code = 502
    user_message = "The payment provider is temporarily unavailable. Please try again in a few minutes."


class GatewayTimeout(GatewayUnavailable):
    code = "GATEWAY_TIMEOUT"
    status_code = 504
    user_message = "The payment provider is responding slowly. Please try again."

    def __init__(self, detail: Optional[str] = None, ambiguous: bool = False):
        # ambiguous: the request reached the provider, its outcome is unknown
        self.ambiguous = ambiguous
        super().__init__(detail)


class UnmatchedWebhook(PaymentError):
    """Logged only; gateways always get a 200 for webhooks we could not match."""

    code = "UNMATCHED_WEBHOOK"
    status_code = 200
    user_message = "Webhook received."
