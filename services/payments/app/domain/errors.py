"""Payment domain errors.

Gateway-facing handlers map these to HTTP status codes so that the gateway's
own retry logic keeps working; client-facing handlers map them to short,
user-readable messages.
"""

from typing import Optional


class PaymentError(Exception):
    """Base class for every error raised by the payment core."""

    user_message = "Payment could not be processed. Please try again."


class ConfigurationError(PaymentError):
    """Required configuration is missing or invalid. Fatal at startup."""


class PaymentValidationError(PaymentError):
    """Malformed amount or phone number, detected before any external call."""

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = message


class GatewayAuthError(PaymentError):
    """The client-credential token exchange with the gateway failed."""

    user_message = "M-Pesa is not reachable right now. Please try again shortly."


class GatewayUnavailable(PaymentError):
    """The push request failed at the transport level.

    The push may or may not have reached the payer's device.
    """

    user_message = "M-Pesa is not reachable right now. Please try again shortly."


class GatewayRejected(PaymentError):
    """The gateway answered but refused the push request."""

    user_message = "M-Pesa declined the payment request. Check the phone number and try again."

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class OrderNotFound(PaymentError):
    user_message = "Order not found."


class PaymentAlreadyInFlight(PaymentError):
    """The order already carries a correlation id or is no longer pending."""

    user_message = "A payment for this order is already in progress or finished."


class CorrelationWriteError(PaymentError):
    """The push was sent but its correlation id could not be stored."""

    user_message = (
        "Your payment request was sent but we could not record it. "
        "Please contact support before paying again."
    )

    def __init__(self, message: str, order_id: int, checkout_request_id: str):
        super().__init__(message)
        self.order_id = order_id
        self.checkout_request_id = checkout_request_id


class CorrelationNotFound(PaymentError):
    """A callback referenced a correlation id that matches no order."""

    def __init__(self, checkout_request_id: str):
        super().__init__(f"No order for CheckoutRequestID {checkout_request_id}")
        self.checkout_request_id = checkout_request_id


class MalformedCallback(PaymentError):
    """The callback body does not have the expected shape."""


class DuplicateLedgerEntry(PaymentError):
    """A ledger entry for this receipt already exists."""

    def __init__(self, receipt_number: str):
        super().__init__(f"Ledger entry {receipt_number} already recorded")
        self.receipt_number = receipt_number


class PersistenceError(PaymentError):
    """A database write failed during reconciliation."""


class InvalidTransition(PaymentError):
    """A client waiter state change that the state machine does not allow."""


class OrderConflict(PaymentError):
    """A fulfilment change the order's current state does not allow."""

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = message
