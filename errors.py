"""
Error taxonomy for checkout, pricing and inventory.

Every error has a stable ``kind`` for clients, a human readable message, and
an HTTP status used by the API exception handler. Stock errors also carry the
quantity actually available so a client can retry with less.
"""
from typing import Any, Dict, Optional


class CommerceError(Exception):
    kind = "CommerceError"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "error", "kind": self.kind, "message": self.message, **self.details}


class ProductUnavailable(CommerceError):
    kind = "ProductUnavailable"


class VariantUnavailable(CommerceError):
    kind = "VariantUnavailable"


class InsufficientStock(CommerceError):
    kind = "InsufficientStock"
    status_code = 409

    def __init__(self, message: str, available: int, **details: Any):
        super().__init__(message, available=available, **details)
        self.available = available


# The reservation engine reports the same condition under this name.
OutOfStock = InsufficientStock


class EmptyCart(CommerceError):
    kind = "EmptyCart"


class InvalidCoupon(CommerceError):
    kind = "InvalidCoupon"


class CouponExpired(CommerceError):
    kind = "CouponExpired"


class CouponLimitReached(CommerceError):
    kind = "CouponLimitReached"


class CouponNotApplicable(CommerceError):
    kind = "CouponNotApplicable"


class MinOrderNotMet(CommerceError):
    kind = "MinOrderNotMet"

    def __init__(self, message: str, min_order_amount: float, applicable_amount: float):
        super().__init__(message, min_order_amount=min_order_amount, applicable_amount=applicable_amount)


class InvalidStatusTransition(CommerceError):
    kind = "InvalidStatusTransition"
    status_code = 409

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message, current=current, target=target)


class RefundExceedsBalance(CommerceError):
    kind = "RefundExceedsBalance"

    def __init__(self, message: str, refundable: float):
        super().__init__(message, refundable=refundable)


class OrderNotFound(CommerceError):
    kind = "OrderNotFound"
    status_code = 404


class PersistenceFailure(CommerceError):
    kind = "PersistenceFailure"
    status_code = 500


class CouponNotFound(CommerceError):
    kind = "CouponNotFound"
    status_code = 404


class InvalidCouponUpdate(CommerceError):
    kind = "InvalidCouponUpdate"


class InvalidStockLevel(CommerceError):
    kind = "InvalidStockLevel"
