# Overview: Typed business-rule failures raised by the inventory core.

"""
Error hierarchy for the inventory core.

WHY: Callers (HTTP handlers, CLI, jobs) need to tell an invalid request apart
from a lost optimistic-locking race apart from an infrastructure fault.
Every failure raised by a service is an IMSError subclass with a stable
``code``; only ConcurrentModificationError is ``retryable``.

Unanticipated storage faults are wrapped in InternalError by the unit of work
(services/concurrency.py) so the original SQLAlchemy exception never leaks
past the core, but stays available as ``__cause__``.
"""

from __future__ import annotations


class IMSError(Exception):
    """Base class for all inventory core failures."""

    code = "ERROR"
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


# =============================================================================
# GENERIC
# =============================================================================

class NotFoundError(IMSError):
    """Entity unresolved by id or code."""
    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier, message: str | None = None):
        super().__init__(
            message or f"{entity} {identifier} not found",
            {"entity": entity, "id": identifier},
        )
        self.entity = entity
        self.identifier = identifier


class AlreadyExistsError(IMSError):
    """Duplicate SKU / code / email / invoice-per-order."""
    code = "ALREADY_EXISTS"


class InvalidTransitionError(IMSError):
    """Status change not permitted from the current state."""
    code = "INVALID_TRANSITION"


class InvalidOrderStatusTransitionError(InvalidTransitionError):
    code = "INVALID_ORDER_STATUS_TRANSITION"


class AdjustmentAlreadyAppliedError(InvalidTransitionError):
    code = "ADJUSTMENT_ALREADY_APPLIED"


class OrderNotEditableError(IMSError):
    code = "ORDER_NOT_EDITABLE"


class InsufficientStockError(IMSError):
    code = "INSUFFICIENT_STOCK"


class InvalidAmountError(IMSError):
    code = "INVALID_AMOUNT"


class OverReceiptError(InvalidAmountError):
    code = "OVER_RECEIPT"


class ValidationError(IMSError):
    """Malformed input that slipped past the calling layer."""
    code = "VALIDATION_ERROR"


class InvalidTransferError(IMSError):
    code = "INVALID_TRANSFER"


class ConcurrentModificationError(IMSError):
    """
    Optimistic version mismatch.

    The only failure a caller may legitimately retry unchanged.
    """
    code = "CONCURRENT_MODIFICATION"
    retryable = True


class PendingApprovalError(IMSError):
    code = "PENDING_APPROVAL"


class InternalError(IMSError):
    """Opaque wrapper for storage/infrastructure faults."""
    code = "INTERNAL_ERROR"


# =============================================================================
# BILLING / PAYMENT
# =============================================================================

class InvoiceAlreadyExistsError(AlreadyExistsError):
    code = "INVOICE_ALREADY_EXISTS"


class InvoiceAlreadyCancelledError(IMSError):
    code = "INVOICE_ALREADY_CANCELLED"


class InvoiceAlreadyPaidError(IMSError):
    code = "INVOICE_ALREADY_PAID"


class InvoicePaymentExceedsBalanceError(IMSError):
    code = "INVOICE_PAYMENT_EXCEEDS_BALANCE"


class PaymentNotRefundableError(IMSError):
    code = "PAYMENT_NOT_REFUNDABLE"


class PaymentAlreadyRefundedError(IMSError):
    code = "PAYMENT_ALREADY_REFUNDED"


class RefundAmountExceedsPaymentError(IMSError):
    code = "REFUND_AMOUNT_EXCEEDS_PAYMENT"


# =============================================================================
# SHIPMENT
# =============================================================================

class SalesOrderNotFulfilledError(IMSError):
    code = "SALES_ORDER_NOT_FULFILLED"


class ShipmentAlreadyTerminatedError(IMSError):
    code = "SHIPMENT_ALREADY_TERMINATED"


class ShipmentNotEligibleForDeliveryError(IMSError):
    code = "SHIPMENT_NOT_ELIGIBLE_FOR_DELIVERY"


# =============================================================================
# CATALOG
# =============================================================================

class CategoryHasChildrenError(IMSError):
    code = "CATEGORY_HAS_CHILDREN"


class CategoryHasProductsError(IMSError):
    code = "CATEGORY_HAS_PRODUCTS"


class CircularCategoryReferenceError(IMSError):
    code = "CIRCULAR_CATEGORY_REFERENCE"
