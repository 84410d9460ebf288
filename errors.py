"""Error taxonomy for the storefront domain.

Domain modules raise these; ``main.py`` renders them as JSON with the status code
and machine code carried by each class. ``current`` optionally holds the persisted
state the client should reconcile against (for example a freshly pruned cart).
"""

from typing import Any, Optional


class StoreError(Exception):
    """Base exception for all storefront errors."""

    status_code = 400
    code = "store_error"

    def __init__(self, message: str, current: Optional[Any] = None):
        self.message = message
        self.current = current
        super().__init__(message)


class NotFound(StoreError):
    status_code = 404
    code = "not_found"


class ItemNotFound(NotFound):
    """Raised when no cart line matches (product, size, color)."""

    code = "item_not_found"

    def __init__(self, message: str = "Item not found in cart", current: Optional[Any] = None):
        super().__init__(message, current)


class CouponNotFound(NotFound):
    code = "coupon_not_found"

    def __init__(self, message: str = "Invalid coupon code", current: Optional[Any] = None):
        super().__init__(message, current)


class Unauthorized(StoreError):
    """Raised on ownership mismatch or a missing admin role."""

    status_code = 403
    code = "unauthorized"

    def __init__(self, message: str = "Not authorized", current: Optional[Any] = None):
        super().__init__(message, current)


class InvalidState(StoreError):
    """Raised when an operation is attempted from a state that forbids it."""

    code = "invalid_state"


class IllegalTransition(InvalidState):
    code = "illegal_transition"

    def __init__(self, kind: str, current_status: str, target: str, current: Optional[Any] = None):
        self.kind = kind
        self.from_status = current_status
        self.to_status = target
        super().__init__(f"Cannot change {kind} from '{current_status}' to '{target}'", current)


class CancellationWindowClosed(InvalidState):
    code = "cancellation_window_closed"

    def __init__(self, message: str = "Order cannot be cancelled at this stage", current: Optional[Any] = None):
        super().__init__(message, current)


class ReturnWindowExpired(InvalidState):
    code = "return_window_expired"

    def __init__(self, days: int, window: int):
        self.days = days
        self.window = window
        super().__init__(
            f"Return window of {window} days has expired ({days} days since delivery)"
        )


class DuplicateReturn(InvalidState):
    code = "duplicate_return"

    def __init__(self, message: str = "Return request already exists for this order"):
        super().__init__(message)


class CouponExpired(InvalidState):
    code = "coupon_expired"

    def __init__(self, message: str = "Coupon is expired or no longer valid", current: Optional[Any] = None):
        super().__init__(message, current)


class MinimumOrderNotMet(InvalidState):
    code = "minimum_order_not_met"

    def __init__(self, minimum: float, current: Optional[Any] = None):
        self.minimum = minimum
        super().__init__(f"Minimum order amount of ₹{minimum:g} required", current)


class InsufficientStock(StoreError):
    code = "insufficient_stock"

    def __init__(self, message: str = "Insufficient stock", current: Optional[Any] = None):
        super().__init__(message, current)


OutOfStock = InsufficientStock


class InvalidPaymentSignature(StoreError):
    code = "invalid_payment_signature"

    def __init__(self, message: str = "Invalid payment signature", current: Optional[Any] = None):
        super().__init__(message, current)


class ValidationError(StoreError):
    """Raised for malformed input the request models cannot catch."""

    code = "validation_error"


class PaymentGatewayError(StoreError):
    status_code = 502
    code = "payment_gateway_error"
