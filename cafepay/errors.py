"""Error taxonomy for order creation and payment reconciliation.

Every error carries the HTTP status it maps to and a client-facing
message. ``detail`` is only populated where it is safe to show to the
client (codec diagnostics); upstream settlement payloads stay in the logs.
"""

from typing import Optional


class PaymentError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Server error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)

    def to_body(self) -> dict:
        body = {"ok": False, "error": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class InvalidAmount(PaymentError):
    status_code = 400
    code = "INVALID_AMOUNT"
    message = "Invalid amount (must be > 0)"


class InvalidCurrency(PaymentError):
    status_code = 400
    code = "INVALID_CURRENCY"
    message = "Unsupported currency"


class MisconfiguredMerchant(PaymentError):
    status_code = 400
    code = "MISCONFIGURED_MERCHANT"
    message = "BAKONG_ACCOUNT_ID is not set correctly (e.g. yourid@aclb)"


class EncodingFailure(PaymentError):
    status_code = 500
    code = "ENCODING_FAILURE"
    message = "Failed to generate KHQR"


class DuplicateOrder(PaymentError):
    status_code = 409
    code = "DUPLICATE_ORDER"
    message = "Order id collision; please retry"


class OrderNotFound(PaymentError):
    status_code = 404
    code = "ORDER_NOT_FOUND"
    message = "Order not found"


class ReconciliationFailure(PaymentError):
    status_code = 502
    code = "RECONCILIATION_FAILURE"
    message = "Payment status check failed"


class InternalError(PaymentError):
    pass


class SettlementError(Exception):
    """Raised by the settlement client on transport or protocol failure.

    Never reaches the client directly: the ledger converts it into a
    ``ReconciliationFailure`` after logging it.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
