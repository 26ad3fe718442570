"""
Payment tests: status changes, invoice crediting and refunds.
"""

from datetime import date

import pytest

from ims.errors import (
    InvalidAmountError,
    InvalidTransitionError,
    InvoiceAlreadyCancelledError,
    InvoiceAlreadyPaidError,
    InvoicePaymentExceedsBalanceError,
    PaymentAlreadyRefundedError,
    PaymentNotRefundableError,
    RefundAmountExceedsPaymentError,
    ValidationError,
)
from ims.services import catalog_service, invoice_service, payment_service
from ims.services import sales_order_service as so_service


@pytest.fixture
def invoice(db_session, customer, warehouse, stocked_product):
    order = so_service.create_sales_order(
        customer.id, warehouse.id, items=[{"product_id": stocked_product.id, "quantity": 10}]
    )
    so_service.confirm_sales_order(order.id)
    return invoice_service.generate_invoice(order.id, date(2025, 5, 1), date(2025, 5, 31))


class TestRecordPayment:

    def test_pending_payment_does_not_touch_invoice(self, invoice, customer):
        payment = payment_service.record_payment(customer.id, 4000, "CREDIT_CARD", invoice_id=invoice.id)

        assert payment.status == payment_service.PAYMENT_STATUS_PENDING
        assert payment.sales_order_id == invoice.sales_order_id
        assert invoice_service.get_invoice(invoice.id).paid_cents == 0

    def test_completing_payment_credits_invoice(self, invoice, customer):
        payment = payment_service.record_payment(customer.id, 4000, "CREDIT_CARD", invoice_id=invoice.id)
        payment_service.update_payment_status(payment.id, payment_service.PAYMENT_STATUS_COMPLETED)

        updated = invoice_service.get_invoice(invoice.id)
        assert updated.paid_cents == 4000
        assert updated.balance_due_cents == 6000
        assert updated.status == invoice_service.INVOICE_STATUS_PARTIAL

    def test_completed_payment_over_balance_rejected(self, invoice, customer):
        with pytest.raises(InvoicePaymentExceedsBalanceError):
            payment_service.record_payment(
                customer.id,
                10001,
                "CASH",
                invoice_id=invoice.id,
                status=payment_service.PAYMENT_STATUS_COMPLETED,
            )
        assert payment_service.list_customer_payments(customer.id) == []

    def test_invoice_of_another_customer(self, invoice):
        other = catalog_service.create_customer("bob@example.com", "Bob", "Roe")
        with pytest.raises(ValidationError):
            payment_service.record_payment(other.id, 100, "CASH", invoice_id=invoice.id)

    def test_pending_payment_on_cancelled_invoice_rejected(self, invoice, customer):
        invoice_service.cancel_invoice(invoice.id)

        with pytest.raises(InvoiceAlreadyCancelledError):
            payment_service.record_payment(customer.id, 1_000_000_000, "CASH", invoice_id=invoice.id)
        assert payment_service.list_customer_payments(customer.id) == []

    def test_pending_payment_on_paid_invoice_rejected(self, invoice, customer):
        invoice_service.record_payment(invoice.id, 10000, date(2025, 5, 10), "CASH")

        with pytest.raises(InvoiceAlreadyPaidError):
            payment_service.record_payment(customer.id, 100, "CASH", invoice_id=invoice.id)

    def test_pending_payment_over_balance_rejected(self, invoice, customer):
        with pytest.raises(InvoicePaymentExceedsBalanceError):
            payment_service.record_payment(customer.id, 10001, "CHECK", invoice_id=invoice.id)

    def test_standalone_account_payment(self, db_session, customer):
        payment = payment_service.record_payment(
            customer.id, 2500, "PAYPAL", status=payment_service.PAYMENT_STATUS_COMPLETED
        )
        assert payment.invoice_id is None
        assert payment_service.customer_total_paid(customer.id) == 2500

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount(self, db_session, customer, amount):
        with pytest.raises(InvalidAmountError):
            payment_service.record_payment(customer.id, amount, "CASH")


class TestPaymentStatus:

    def test_failed_is_terminal(self, db_session, customer):
        payment = payment_service.record_payment(customer.id, 100, "CASH")
        payment_service.update_payment_status(payment.id, payment_service.PAYMENT_STATUS_FAILED)

        with pytest.raises(InvalidTransitionError):
            payment_service.update_payment_status(payment.id, payment_service.PAYMENT_STATUS_COMPLETED)
        assert payment_service.customer_total_paid(customer.id) == 0

    def test_refunded_cannot_change_status(self, db_session, customer):
        payment = payment_service.record_payment(
            customer.id, 100, "CASH", status=payment_service.PAYMENT_STATUS_COMPLETED
        )
        payment_service.refund_payment(payment.id, 100, "Duplicate charge")

        with pytest.raises(PaymentAlreadyRefundedError):
            payment_service.update_payment_status(payment.id, payment_service.PAYMENT_STATUS_COMPLETED)


class TestRefunds:

    def test_partial_refund_recorded_on_payment(self, invoice, customer):
        invoice_service.record_payment(invoice.id, 10000, date(2025, 5, 10), "CREDIT_CARD")
        payment = invoice_service.list_payments(invoice.id)[0]

        refunded = payment_service.refund_payment(payment.id, 3000, "Damaged item")

        assert refunded.status == payment_service.PAYMENT_STATUS_REFUNDED
        assert refunded.refund_amount_cents == 3000
        assert refunded.refund_reason == "Damaged item"
        assert refunded.refunded_at is not None
        assert "REFUND: Damaged item" in refunded.notes
        # The invoice is not re-opened by a refund
        assert invoice_service.get_invoice(invoice.id).status == invoice_service.INVOICE_STATUS_PAID

    def test_refund_only_once(self, db_session, customer):
        payment = payment_service.record_payment(
            customer.id, 500, "CASH", status=payment_service.PAYMENT_STATUS_COMPLETED
        )
        payment_service.refund_payment(payment.id, 200, "Partial return")

        with pytest.raises(PaymentAlreadyRefundedError):
            payment_service.refund_payment(payment.id, 100, "Again")

    def test_refund_exceeding_amount(self, db_session, customer):
        payment = payment_service.record_payment(
            customer.id, 500, "CASH", status=payment_service.PAYMENT_STATUS_COMPLETED
        )
        with pytest.raises(RefundAmountExceedsPaymentError):
            payment_service.refund_payment(payment.id, 501, "Too much")

    def test_pending_payment_not_refundable(self, db_session, customer):
        payment = payment_service.record_payment(customer.id, 500, "CASH")
        with pytest.raises(PaymentNotRefundableError):
            payment_service.refund_payment(payment.id, 100, "Not yet paid")
