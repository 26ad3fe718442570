"""
End-to-end scenarios across the ledger, order and billing services.
"""

from datetime import date

import pytest

from ims.errors import InsufficientStockError, InvoicePaymentExceedsBalanceError
from ims.services import catalog_service, invoice_service, transfer_service
from ims.services import purchase_order_service as po_service
from ims.services import sales_order_service as so_service
from ims.services import stock_ledger_service as ledger


def test_transfer_twenty_of_fifty(db_session, product, warehouse, second_warehouse):
    ledger.add_stock(product.id, warehouse.id, 50, ledger.MOVEMENT_TYPE_RECEIPT)

    transfer_service.transfer(product.id, warehouse.id, second_warehouse.id, 20)

    assert ledger.get_quantity(product.id, warehouse.id) == 30
    assert ledger.get_quantity(product.id, second_warehouse.id) == 20
    assert len(ledger.list_movements(movement_type=ledger.MOVEMENT_TYPE_TRANSFER)) == 1


def test_full_receipt_of_ten(db_session, supplier, warehouse, product):
    order = po_service.create_purchase_order(
        supplier.id,
        warehouse.id,
        items=[{"product_id": product.id, "quantity_ordered": 10, "unit_price_cents": 400}],
    )
    po_service.submit_purchase_order(order.id)
    po_service.approve_purchase_order(order.id)
    item = po_service.get_items(order.id)[0]

    received = po_service.receive_purchase_order(
        order.id, date(2025, 2, 1), [{"item_id": item.id, "quantity_received": 10}]
    )

    assert received.status == po_service.PO_STATUS_RECEIVED
    assert ledger.get_quantity(product.id, warehouse.id) == 10


def test_fulfillment_is_all_or_nothing(db_session, customer, warehouse, product):
    other = catalog_service.create_product("GADGET-1", "Gadget", 2500)
    ledger.add_stock(product.id, warehouse.id, 5, ledger.MOVEMENT_TYPE_RECEIPT)
    ledger.add_stock(other.id, warehouse.id, 3, ledger.MOVEMENT_TYPE_RECEIPT)
    order = so_service.create_sales_order(
        customer.id,
        warehouse.id,
        items=[
            {"product_id": product.id, "quantity": 5},
            {"product_id": other.id, "quantity": 3},
        ],
    )
    so_service.confirm_sales_order(order.id)
    ledger.remove_stock(other.id, warehouse.id, 1)

    with pytest.raises(InsufficientStockError):
        so_service.fulfill_sales_order(order.id)

    assert ledger.get_quantity(product.id, warehouse.id) == 5
    assert ledger.get_quantity(other.id, warehouse.id) == 2
    assert ledger.list_movements(reference_number=order.so_number) == []
    assert so_service.get_sales_order(order.id).status == so_service.SO_STATUS_CONFIRMED


def test_partial_payment_then_overpayment(db_session, customer, warehouse, stocked_product):
    order = so_service.create_sales_order(
        customer.id, warehouse.id, items=[{"product_id": stocked_product.id, "quantity": 10}]
    )
    so_service.confirm_sales_order(order.id)
    invoice = invoice_service.generate_invoice(order.id, date(2025, 5, 1), date(2025, 5, 31))
    assert invoice.total_cents == 10000

    invoice = invoice_service.record_payment(invoice.id, 6000, date(2025, 5, 5), "CASH")
    assert invoice.status == invoice_service.INVOICE_STATUS_PARTIAL
    assert invoice.balance_due_cents == 4000

    with pytest.raises(InvoicePaymentExceedsBalanceError):
        invoice_service.record_payment(invoice.id, 5000, date(2025, 5, 6), "CASH")
