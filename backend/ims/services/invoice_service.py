# backend/ims/services/invoice_service.py
"""
Billing engine: invoices generated from sales orders.

WHY: One invoice per sales order, with a balance that always satisfies
balance_due = total - paid and 0 <= paid <= total. Payments are the only
way paid/balance change; PARTIAL and PAID are derived, never set by hand.

STATUS:
DRAFT -> SENT -> PARTIAL -> PAID
SENT/PARTIAL -> OVERDUE (past due date, see mark_overdue)
unpaid -> CANCELLED
PAID and CANCELLED are terminal.
"""
from __future__ import annotations

from datetime import date

import structlog

from ..errors import (
    InvalidAmountError,
    InvalidTransitionError,
    InvoiceAlreadyCancelledError,
    InvoiceAlreadyExistsError,
    InvoiceAlreadyPaidError,
    InvoicePaymentExceedsBalanceError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Invoice, Payment
from ..time_utils import today
from . import sales_order_service
from .concurrency import atomic
from .document_service import next_document_number
from .identity_service import resolve_user

logger = structlog.get_logger(__name__)


# Invoice status constants
INVOICE_STATUS_DRAFT = "DRAFT"
INVOICE_STATUS_SENT = "SENT"
INVOICE_STATUS_PARTIAL = "PARTIAL"
INVOICE_STATUS_PAID = "PAID"
INVOICE_STATUS_OVERDUE = "OVERDUE"
INVOICE_STATUS_CANCELLED = "CANCELLED"

# Statuses a caller may set directly; PARTIAL/PAID follow from payments
MANUAL_STATUSES = {INVOICE_STATUS_SENT, INVOICE_STATUS_OVERDUE, INVOICE_STATUS_CANCELLED}

# Invoices that have gone out to the customer and still carry a balance
BILLED_STATUSES = {INVOICE_STATUS_SENT, INVOICE_STATUS_PARTIAL, INVOICE_STATUS_OVERDUE}

# Status a manual change must start from
MANUAL_SOURCE_STATUSES = {
    INVOICE_STATUS_SENT: {INVOICE_STATUS_DRAFT},
    INVOICE_STATUS_OVERDUE: {INVOICE_STATUS_SENT, INVOICE_STATUS_PARTIAL},
}

INVOICEABLE_ORDER_STATUSES = {
    sales_order_service.SO_STATUS_CONFIRMED,
    sales_order_service.SO_STATUS_FULFILLED,
    sales_order_service.SO_STATUS_SHIPPED,
    sales_order_service.SO_STATUS_DELIVERED,
}


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice", invoice_id)
    return invoice


def get_invoice_for_order(sales_order_id: int) -> Invoice | None:
    return db.session.query(Invoice).filter_by(sales_order_id=sales_order_id).first()


def _require_mutable(invoice: Invoice) -> None:
    if invoice.status == INVOICE_STATUS_CANCELLED:
        raise InvoiceAlreadyCancelledError(
            f"Invoice {invoice.invoice_number} is cancelled",
            {"invoice_id": invoice.id},
        )
    if invoice.status == INVOICE_STATUS_PAID:
        raise InvoiceAlreadyPaidError(
            f"Invoice {invoice.invoice_number} is already paid",
            {"invoice_id": invoice.id},
        )


def generate_invoice(
    sales_order_id: int,
    invoice_date: date,
    due_date: date,
    *,
    discount_cents: int = 0,
    notes: str | None = None,
    commit: bool = True,
) -> Invoice:
    """
    Create the DRAFT invoice for a confirmed (or later) sales order.

    Amounts are copied from the order: total = subtotal + tax + shipping - discount.

    Raises:
        InvoiceAlreadyExistsError: Order already invoiced
        InvalidTransitionError: Order PENDING or CANCELLED
        ValidationError: Due date before invoice date
        InvalidAmountError: Discount negative or larger than the order
    """
    def _op() -> Invoice:
        order = sales_order_service.get_sales_order(sales_order_id)
        existing = get_invoice_for_order(order.id)
        if existing:
            raise InvoiceAlreadyExistsError(
                f"Sales order {order.so_number} already has invoice {existing.invoice_number}",
                {"sales_order_id": order.id, "invoice_id": existing.id},
            )
        if order.status not in INVOICEABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Cannot invoice sales order in {order.status} status",
                {"status": order.status},
            )
        if due_date < invoice_date:
            raise ValidationError("Due date cannot be before the invoice date")

        gross = order.subtotal_cents + order.tax_cents + order.shipping_cents
        if discount_cents < 0 or discount_cents > gross:
            raise InvalidAmountError(
                "Discount must be between 0 and the order total",
                {"discount_cents": discount_cents, "order_total_cents": gross},
            )
        total = gross - discount_cents

        invoice = Invoice(
            invoice_number=next_document_number(document_type="INVOICE", prefix="INV", on_date=invoice_date),
            sales_order_id=order.id,
            customer_id=order.customer_id,
            invoice_date=invoice_date,
            due_date=due_date,
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            shipping_cents=order.shipping_cents,
            discount_cents=discount_cents,
            total_cents=total,
            paid_cents=0,
            balance_due_cents=total,
            status=INVOICE_STATUS_DRAFT,
            notes=notes,
        )
        db.session.add(invoice)
        db.session.flush()

        logger.info("invoice.generated", invoice_id=invoice.id, sales_order_id=order.id, total_cents=total)
        return invoice

    return atomic(_op, commit=commit, operation="generate_invoice")


def send_invoice(invoice_id: int, *, commit: bool = True) -> Invoice:
    """DRAFT -> SENT."""
    def _op() -> Invoice:
        invoice = get_invoice(invoice_id)
        _require_mutable(invoice)
        if invoice.status != INVOICE_STATUS_DRAFT:
            raise InvalidTransitionError(
                f"Cannot send invoice in {invoice.status} status",
                {"status": invoice.status},
            )
        invoice.status = INVOICE_STATUS_SENT
        db.session.flush()
        logger.info("invoice.sent", invoice_id=invoice.id)
        return invoice

    return atomic(_op, commit=commit, operation="send_invoice")


def update_status(invoice_id: int, status: str, *, commit: bool = True) -> Invoice:
    """
    Manually set SENT, OVERDUE or CANCELLED.

    Raises:
        InvoiceAlreadyCancelledError / InvoiceAlreadyPaidError: Terminal invoice
        InvalidTransitionError: PARTIAL/PAID/DRAFT requested, SENT on an
            invoice that is no longer DRAFT, OVERDUE on an unsent invoice,
            or cancelling an invoice that already received money
    """
    def _op() -> Invoice:
        invoice = get_invoice(invoice_id)
        _require_mutable(invoice)
        if status not in MANUAL_STATUSES:
            raise InvalidTransitionError(
                f"Invoice status {status} cannot be set directly",
                {"status": invoice.status, "requested": status},
            )
        allowed_from = MANUAL_SOURCE_STATUSES.get(status)
        if allowed_from is not None and invoice.status not in allowed_from:
            raise InvalidTransitionError(
                f"Cannot move invoice from {invoice.status} to {status}",
                {"status": invoice.status, "requested": status},
            )
        if status == INVOICE_STATUS_CANCELLED and invoice.paid_cents > 0:
            raise InvalidTransitionError(
                f"Invoice {invoice.invoice_number} has payments and cannot be cancelled",
                {"paid_cents": invoice.paid_cents},
            )
        previous = invoice.status
        invoice.status = status
        db.session.flush()
        logger.info("invoice.status_changed", invoice_id=invoice.id, previous=previous, status=status)
        return invoice

    return atomic(_op, commit=commit, operation="update_invoice_status")


def cancel_invoice(invoice_id: int, *, commit: bool = True) -> Invoice:
    return update_status(invoice_id, INVOICE_STATUS_CANCELLED, commit=commit)


def check_payable(invoice: Invoice, amount_cents: int) -> None:
    """Raise unless amount_cents could be credited to the invoice right now."""
    _require_mutable(invoice)
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmountError("Payment amount must be positive", {"amount_cents": amount_cents})
    if amount_cents > invoice.balance_due_cents:
        raise InvoicePaymentExceedsBalanceError(
            f"Payment of {amount_cents} exceeds balance due {invoice.balance_due_cents} "
            f"on invoice {invoice.invoice_number}",
            {"amount_cents": amount_cents, "balance_due_cents": invoice.balance_due_cents},
        )


def apply_payment(invoice: Invoice, amount_cents: int) -> Invoice:
    """
    Credit a completed payment to an invoice (no unit of work).

    Shared by record_payment below and payment_service when a standalone
    payment against an invoice completes.
    """
    check_payable(invoice, amount_cents)

    invoice.paid_cents = invoice.paid_cents + amount_cents
    invoice.balance_due_cents = invoice.total_cents - invoice.paid_cents
    invoice.status = INVOICE_STATUS_PARTIAL if invoice.balance_due_cents > 0 else INVOICE_STATUS_PAID
    db.session.flush()

    logger.info(
        "invoice.payment_applied",
        invoice_id=invoice.id,
        amount_cents=amount_cents,
        paid_cents=invoice.paid_cents,
        balance_due_cents=invoice.balance_due_cents,
        status=invoice.status,
    )
    return invoice


def record_payment(
    invoice_id: int,
    amount_cents: int,
    payment_date: date,
    payment_method: str,
    *,
    reference_number: str | None = None,
    processed_by_user_id: int | None = None,
    notes: str | None = None,
    commit: bool = True,
) -> Invoice:
    """
    Record a payment received against an invoice.

    Creates a COMPLETED Payment linked to the invoice and updates
    paid/balance/status in the same unit of work.

    Raises:
        InvoiceAlreadyCancelledError / InvoiceAlreadyPaidError
        InvalidAmountError: amount <= 0
        InvoicePaymentExceedsBalanceError: amount > balance due
    """
    # Local import: payment_service applies payments through this module
    from .payment_service import PAYMENT_METHODS, PAYMENT_STATUS_COMPLETED

    def _op() -> Invoice:
        invoice = get_invoice(invoice_id)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method {payment_method!r}")
        resolve_user(processed_by_user_id)

        apply_payment(invoice, amount_cents)

        payment = Payment(
            payment_number=next_document_number(document_type="PAYMENT", prefix="PAY", on_date=payment_date),
            invoice_id=invoice.id,
            sales_order_id=invoice.sales_order_id,
            customer_id=invoice.customer_id,
            payment_date=payment_date,
            amount_cents=amount_cents,
            payment_method=payment_method,
            status=PAYMENT_STATUS_COMPLETED,
            reference_number=reference_number,
            notes=notes,
            processed_by_user_id=processed_by_user_id,
        )
        db.session.add(payment)
        db.session.flush()
        return invoice

    return atomic(_op, commit=commit, operation="record_invoice_payment")


def list_payments(invoice_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter_by(invoice_id=invoice_id)
        .order_by(Payment.id.asc())
        .all()
    )


def list_overdue(as_of: date | None = None) -> list[Invoice]:
    """Sent invoices with a balance whose due date has passed. DRAFT invoices never go overdue."""
    as_of = as_of or today()
    return (
        db.session.query(Invoice)
        .filter(Invoice.status.in_(BILLED_STATUSES))
        .filter(Invoice.balance_due_cents > 0)
        .filter(Invoice.due_date < as_of)
        .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        .all()
    )


def mark_overdue(as_of: date | None = None, *, commit: bool = True) -> list[Invoice]:
    """Move every overdue open invoice to OVERDUE; returns the ones changed."""
    def _op() -> list[Invoice]:
        changed = []
        for invoice in list_overdue(as_of):
            if invoice.status != INVOICE_STATUS_OVERDUE:
                invoice.status = INVOICE_STATUS_OVERDUE
                changed.append(invoice)
        db.session.flush()
        logger.info("invoice.overdue_marked", count=len(changed))
        return changed

    return atomic(_op, commit=commit, operation="mark_invoices_overdue")
