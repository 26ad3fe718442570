# backend/ims/services/payment_service.py
"""
Payment engine: customer payments and refunds.

LIFECYCLE:
PENDING -> COMPLETED -> REFUNDED (terminal)
PENDING -> FAILED (terminal)

A payment linked to an invoice counts towards that invoice only once it is
COMPLETED; completing it runs the same balance checks as
invoice_service.record_payment.

REFUNDS:
Only COMPLETED payments are refundable, once, for at most the original
amount. The invoice is not re-opened by a refund; refunds are tracked on the
payment itself (refund_amount_cents / refund_reason / refunded_at).
"""
from __future__ import annotations

from datetime import date

import structlog
from sqlalchemy import func

from ..errors import (
    InvalidAmountError,
    InvalidTransitionError,
    NotFoundError,
    PaymentAlreadyRefundedError,
    PaymentNotRefundableError,
    RefundAmountExceedsPaymentError,
    ValidationError,
)
from ..extensions import db
from ..models import Customer, Payment
from ..time_utils import today, utcnow
from . import invoice_service, sales_order_service
from .concurrency import atomic
from .document_service import next_document_number
from .identity_service import resolve_user

logger = structlog.get_logger(__name__)


# Payment status constants
PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_COMPLETED = "COMPLETED"
PAYMENT_STATUS_FAILED = "FAILED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"

PAYMENT_METHODS = {"CASH", "CREDIT_CARD", "DEBIT_CARD", "BANK_TRANSFER", "CHECK", "PAYPAL"}

# Allowed manual status changes
_STATUS_TRANSITIONS = {
    PAYMENT_STATUS_PENDING: {PAYMENT_STATUS_COMPLETED, PAYMENT_STATUS_FAILED},
}


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment", payment_id)
    return payment


def list_customer_payments(customer_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter_by(customer_id=customer_id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .all()
    )


def customer_total_paid(customer_id: int) -> int:
    """Sum of COMPLETED payments for a customer, in cents."""
    total = (
        db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0))
        .filter(Payment.customer_id == customer_id, Payment.status == PAYMENT_STATUS_COMPLETED)
        .scalar()
    )
    return int(total or 0)


def record_payment(
    customer_id: int,
    amount_cents: int,
    payment_method: str,
    *,
    invoice_id: int | None = None,
    sales_order_id: int | None = None,
    payment_date: date | None = None,
    status: str = PAYMENT_STATUS_PENDING,
    reference_number: str | None = None,
    notes: str | None = None,
    processed_by_user_id: int | None = None,
    commit: bool = True,
) -> Payment:
    """
    Record a payment on a customer account, optionally against an invoice/order.

    status must be PENDING or COMPLETED. A COMPLETED payment against an
    invoice is credited to it immediately.

    Raises:
        InvalidAmountError: amount <= 0
        ValidationError: Unknown method/status, or invoice/order of another customer
        InvoiceAlreadyCancelledError / InvoiceAlreadyPaidError /
        InvoicePaymentExceedsBalanceError: Invoice cannot take the amount,
            checked on linking and again when the payment completes
    """
    def _op() -> Payment:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidAmountError("Payment amount must be positive", {"amount_cents": amount_cents})
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method {payment_method!r}")
        if status not in (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_COMPLETED):
            raise ValidationError(f"New payments must be PENDING or COMPLETED, got {status!r}")

        if not db.session.get(Customer, customer_id):
            raise NotFoundError("Customer", customer_id)
        resolve_user(processed_by_user_id)

        invoice = None
        order_id = sales_order_id
        if invoice_id is not None:
            invoice = invoice_service.get_invoice(invoice_id)
            if invoice.customer_id != customer_id:
                raise ValidationError(
                    f"Invoice {invoice.invoice_number} belongs to another customer",
                    {"invoice_id": invoice.id, "customer_id": customer_id},
                )
            invoice_service.check_payable(invoice, amount_cents)
            order_id = order_id or invoice.sales_order_id
        if order_id is not None:
            order = sales_order_service.get_sales_order(order_id)
            if order.customer_id != customer_id:
                raise ValidationError(
                    f"Sales order {order.so_number} belongs to another customer",
                    {"sales_order_id": order.id, "customer_id": customer_id},
                )

        paid_on = payment_date or today()
        payment = Payment(
            payment_number=next_document_number(document_type="PAYMENT", prefix="PAY", on_date=paid_on),
            invoice_id=invoice_id,
            sales_order_id=order_id,
            customer_id=customer_id,
            payment_date=paid_on,
            amount_cents=amount_cents,
            payment_method=payment_method,
            status=status,
            reference_number=reference_number,
            notes=notes,
            processed_by_user_id=processed_by_user_id,
        )
        db.session.add(payment)
        db.session.flush()

        if invoice is not None and status == PAYMENT_STATUS_COMPLETED:
            invoice_service.apply_payment(invoice, amount_cents)

        logger.info(
            "payment.recorded",
            payment_id=payment.id,
            customer_id=customer_id,
            invoice_id=invoice_id,
            amount_cents=amount_cents,
            status=status,
        )
        return payment

    return atomic(_op, commit=commit, operation="record_payment")


def update_payment_status(payment_id: int, status: str, *, commit: bool = True) -> Payment:
    """
    PENDING -> COMPLETED | FAILED.

    Completing a payment credits its invoice (if any).

    Raises:
        PaymentAlreadyRefundedError: Payment already REFUNDED
        InvalidTransitionError: Any other transition
    """
    def _op() -> Payment:
        payment = get_payment(payment_id)
        if payment.status == PAYMENT_STATUS_REFUNDED:
            raise PaymentAlreadyRefundedError(
                f"Payment {payment.payment_number} was refunded",
                {"payment_id": payment.id},
            )
        if status not in _STATUS_TRANSITIONS.get(payment.status, set()):
            raise InvalidTransitionError(
                f"Cannot change payment status from {payment.status} to {status}",
                {"status": payment.status, "requested": status},
            )

        if status == PAYMENT_STATUS_COMPLETED and payment.invoice_id is not None:
            invoice_service.apply_payment(invoice_service.get_invoice(payment.invoice_id), payment.amount_cents)

        payment.status = status
        db.session.flush()
        logger.info("payment.status_changed", payment_id=payment.id, status=status)
        return payment

    return atomic(_op, commit=commit, operation="update_payment_status")


def refund_payment(
    payment_id: int,
    refund_amount_cents: int,
    reason: str,
    *,
    commit: bool = True,
) -> Payment:
    """
    Refund a COMPLETED payment (once, up to its amount).

    Raises:
        PaymentAlreadyRefundedError: Already REFUNDED
        PaymentNotRefundableError: Not COMPLETED
        InvalidAmountError: refund <= 0
        RefundAmountExceedsPaymentError: refund > original amount
    """
    def _op() -> Payment:
        payment = get_payment(payment_id)
        if payment.status == PAYMENT_STATUS_REFUNDED:
            raise PaymentAlreadyRefundedError(
                f"Payment {payment.payment_number} was already refunded",
                {"payment_id": payment.id},
            )
        if payment.status != PAYMENT_STATUS_COMPLETED:
            raise PaymentNotRefundableError(
                f"Only COMPLETED payments can be refunded (status {payment.status})",
                {"status": payment.status},
            )
        if isinstance(refund_amount_cents, bool) or not isinstance(refund_amount_cents, int) or refund_amount_cents <= 0:
            raise InvalidAmountError("Refund amount must be positive", {"refund_amount_cents": refund_amount_cents})
        if refund_amount_cents > payment.amount_cents:
            raise RefundAmountExceedsPaymentError(
                f"Refund of {refund_amount_cents} exceeds payment amount {payment.amount_cents}",
                {"refund_amount_cents": refund_amount_cents, "amount_cents": payment.amount_cents},
            )

        payment.status = PAYMENT_STATUS_REFUNDED
        payment.refund_amount_cents = refund_amount_cents
        payment.refund_reason = reason
        payment.refunded_at = utcnow()
        note = f"REFUND: {reason}"
        payment.notes = f"{payment.notes}\n{note}" if payment.notes else note
        db.session.flush()

        logger.info("payment.refunded", payment_id=payment.id, refund_amount_cents=refund_amount_cents)
        return payment

    return atomic(_op, commit=commit, operation="refund_payment")
