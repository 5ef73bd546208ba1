"""
Sale engine error taxonomy.

Business-rule failures (validation, stock, loyalty) are raised before anything
is persisted and leave no side effects behind. Gateway failures are exceptional
and carry whatever reconciliation context the caller needs.
"""

from __future__ import annotations


class SaleEngineError(Exception):
    """Base class for sale engine errors."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(SaleEngineError):
    """Malformed cart, unresolvable product/variant or missing required field."""


class InsufficientStockError(SaleEngineError):
    """Requested quantity cannot be drawn from the batches at the location."""

    def __init__(
        self,
        *,
        product_id: int,
        variant_id: int | None,
        requested: int,
        available: int,
        line_index: int | None = None,
    ):
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        self.line_index = line_index
        super().__init__(
            f"Insufficient stock for product {product_id}"
            f"{f' variant {variant_id}' if variant_id else ''}: "
            f"requested {requested}, available {available}",
            details={
                "line_index": line_index,
                "product_id": product_id,
                "variant_id": variant_id,
                "requested_quantity": requested,
                "available_quantity": available,
                "shortfall": self.shortfall,
            },
        )

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)

    def for_line(self, line_index: int) -> "InsufficientStockError":
        return InsufficientStockError(
            product_id=self.product_id,
            variant_id=self.variant_id,
            requested=self.requested,
            available=self.available,
            line_index=line_index,
        )


class LoyaltyPointsExceededError(SaleEngineError):
    """Redemption request exceeds the customer's points balance."""


class PaymentError(SaleEngineError):
    """Reconciliation target missing or in the wrong state."""

    status_code = 409


class PaymentInitiationError(SaleEngineError):
    """Gateway unreachable or rejected the push request."""

    status_code = 502


class DuplicateCallbackError(SaleEngineError):
    """Callback for a transaction that already reached a terminal state."""

    status_code = 200


class PaymentTimeoutError(SaleEngineError):
    """A pending mobile-money payment received no callback in time."""

    status_code = 408


class NotFoundError(SaleEngineError):
    """Referenced sale or transaction does not exist in the caller's organization."""

    status_code = 404
