"""
Invoice tests: generation from sales orders, payments and balance invariants.
"""

from datetime import date

import pytest

from ims.errors import (
    InvalidAmountError,
    InvalidTransitionError,
    InvoiceAlreadyCancelledError,
    InvoiceAlreadyExistsError,
    InvoiceAlreadyPaidError,
    InvoicePaymentExceedsBalanceError,
    ValidationError,
)
from ims.services import invoice_service
from ims.services import sales_order_service as so_service


@pytest.fixture
def confirmed_order(db_session, customer, warehouse, stocked_product):
    # 10 x 9.00 = 90.00 subtotal, 6.00 tax, 4.00 shipping -> 100.00
    order = so_service.create_sales_order(
        customer.id,
        warehouse.id,
        tax_cents=600,
        shipping_cents=400,
        items=[{"product_id": stocked_product.id, "quantity": 10, "unit_price_cents": 900}],
    )
    return so_service.confirm_sales_order(order.id)


@pytest.fixture
def invoice(confirmed_order):
    return invoice_service.generate_invoice(confirmed_order.id, date(2025, 5, 1), date(2025, 5, 31))


class TestGenerateInvoice:

    def test_amounts_copied_from_order(self, invoice, confirmed_order):
        assert invoice.status == invoice_service.INVOICE_STATUS_DRAFT
        assert invoice.invoice_number == "INV-20250501-0001"
        assert invoice.customer_id == confirmed_order.customer_id
        assert invoice.subtotal_cents == 9000
        assert invoice.total_cents == 10000
        assert invoice.paid_cents == 0
        assert invoice.balance_due_cents == 10000

    def test_discount_reduces_total(self, confirmed_order):
        invoice = invoice_service.generate_invoice(
            confirmed_order.id, date(2025, 5, 1), date(2025, 5, 31), discount_cents=1000
        )
        assert invoice.total_cents == 9000
        assert invoice.balance_due_cents == 9000

    def test_one_invoice_per_order(self, invoice, confirmed_order):
        with pytest.raises(InvoiceAlreadyExistsError):
            invoice_service.generate_invoice(confirmed_order.id, date(2025, 5, 2), date(2025, 6, 1))

    def test_pending_order_not_invoiceable(self, db_session, customer, warehouse, stocked_product):
        order = so_service.create_sales_order(
            customer.id, warehouse.id, items=[{"product_id": stocked_product.id, "quantity": 1}]
        )
        with pytest.raises(InvalidTransitionError):
            invoice_service.generate_invoice(order.id, date(2025, 5, 1), date(2025, 5, 31))

    def test_due_date_before_invoice_date(self, confirmed_order):
        with pytest.raises(ValidationError):
            invoice_service.generate_invoice(confirmed_order.id, date(2025, 5, 1), date(2025, 4, 30))

    def test_discount_larger_than_order(self, confirmed_order):
        with pytest.raises(InvalidAmountError):
            invoice_service.generate_invoice(
                confirmed_order.id, date(2025, 5, 1), date(2025, 5, 31), discount_cents=10001
            )


class TestInvoicePayments:

    def test_partial_then_over_balance_then_full(self, invoice):
        invoice_service.send_invoice(invoice.id)

        updated = invoice_service.record_payment(invoice.id, 6000, date(2025, 5, 10), "BANK_TRANSFER")
        assert updated.status == invoice_service.INVOICE_STATUS_PARTIAL
        assert updated.paid_cents == 6000
        assert updated.balance_due_cents == 4000

        with pytest.raises(InvoicePaymentExceedsBalanceError):
            invoice_service.record_payment(invoice.id, 5000, date(2025, 5, 11), "CASH")

        unchanged = invoice_service.get_invoice(invoice.id)
        assert unchanged.paid_cents == 6000
        assert unchanged.balance_due_cents == 4000
        assert len(invoice_service.list_payments(invoice.id)) == 1

        paid = invoice_service.record_payment(invoice.id, 4000, date(2025, 5, 12), "CASH")
        assert paid.status == invoice_service.INVOICE_STATUS_PAID
        assert paid.balance_due_cents == 0

        with pytest.raises(InvoiceAlreadyPaidError):
            invoice_service.record_payment(invoice.id, 1, date(2025, 5, 13), "CASH")

    def test_payment_rows_link_invoice_and_order(self, invoice, confirmed_order):
        invoice_service.record_payment(invoice.id, 2500, date(2025, 5, 10), "CHECK", reference_number="CHK-7")

        payment = invoice_service.list_payments(invoice.id)[0]
        assert payment.status == "COMPLETED"
        assert payment.sales_order_id == confirmed_order.id
        assert payment.reference_number == "CHK-7"
        assert payment.payment_number.startswith("PAY-20250510-")

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_payment(self, invoice, amount):
        with pytest.raises(InvalidAmountError):
            invoice_service.record_payment(invoice.id, amount, date(2025, 5, 10), "CASH")

    def test_unknown_method(self, invoice):
        with pytest.raises(ValidationError):
            invoice_service.record_payment(invoice.id, 100, date(2025, 5, 10), "BARTER")


class TestInvoiceStatus:

    def test_partial_and_paid_cannot_be_set_directly(self, invoice):
        with pytest.raises(InvalidTransitionError):
            invoice_service.update_status(invoice.id, invoice_service.INVOICE_STATUS_PAID)
        with pytest.raises(InvalidTransitionError):
            invoice_service.update_status(invoice.id, invoice_service.INVOICE_STATUS_PARTIAL)

    def test_cancelled_invoice_takes_no_payments(self, invoice):
        invoice_service.cancel_invoice(invoice.id)

        with pytest.raises(InvoiceAlreadyCancelledError):
            invoice_service.record_payment(invoice.id, 100, date(2025, 5, 10), "CASH")
        with pytest.raises(InvoiceAlreadyCancelledError):
            invoice_service.send_invoice(invoice.id)

    def test_cannot_cancel_after_payment(self, invoice):
        invoice_service.record_payment(invoice.id, 100, date(2025, 5, 10), "CASH")
        with pytest.raises(InvalidTransitionError):
            invoice_service.cancel_invoice(invoice.id)

    def test_mark_overdue(self, invoice):
        invoice_service.send_invoice(invoice.id)

        assert invoice_service.mark_overdue(date(2025, 5, 31)) == []

        changed = invoice_service.mark_overdue(date(2025, 6, 1))
        assert [i.id for i in changed] == [invoice.id]
        assert invoice_service.get_invoice(invoice.id).status == invoice_service.INVOICE_STATUS_OVERDUE

        # Overdue invoices still accept payments
        paid = invoice_service.record_payment(invoice.id, 10000, date(2025, 6, 2), "CASH")
        assert paid.status == invoice_service.INVOICE_STATUS_PAID
        assert invoice_service.list_overdue(date(2025, 7, 1)) == []

    def test_draft_invoice_never_goes_overdue(self, invoice):
        assert invoice_service.list_overdue(date(2025, 8, 1)) == []
        assert invoice_service.mark_overdue(date(2025, 8, 1)) == []
        assert invoice_service.get_invoice(invoice.id).status == invoice_service.INVOICE_STATUS_DRAFT

    def test_partial_invoice_goes_overdue(self, invoice):
        invoice_service.send_invoice(invoice.id)
        invoice_service.record_payment(invoice.id, 2500, date(2025, 5, 10), "CASH")

        changed = invoice_service.mark_overdue(date(2025, 6, 15))

        assert [i.id for i in changed] == [invoice.id]
        assert changed[0].balance_due_cents == 7500

    def test_sent_cannot_overwrite_partial(self, invoice):
        invoice_service.send_invoice(invoice.id)
        invoice_service.record_payment(invoice.id, 100, date(2025, 5, 10), "CASH")

        with pytest.raises(InvalidTransitionError):
            invoice_service.update_status(invoice.id, invoice_service.INVOICE_STATUS_SENT)

        refreshed = invoice_service.get_invoice(invoice.id)
        assert refreshed.status == invoice_service.INVOICE_STATUS_PARTIAL
        assert refreshed.paid_cents == 100

    def test_manual_status_sources(self, invoice):
        with pytest.raises(InvalidTransitionError):
            invoice_service.update_status(invoice.id, invoice_service.INVOICE_STATUS_OVERDUE)

        sent = invoice_service.update_status(invoice.id, invoice_service.INVOICE_STATUS_SENT)
        assert sent.status == invoice_service.INVOICE_STATUS_SENT

        overdue = invoice_service.update_status(invoice.id, invoice_service.INVOICE_STATUS_OVERDUE)
        assert overdue.status == invoice_service.INVOICE_STATUS_OVERDUE

        with pytest.raises(InvalidTransitionError):
            invoice_service.update_status(invoice.id, invoice_service.INVOICE_STATUS_SENT)
