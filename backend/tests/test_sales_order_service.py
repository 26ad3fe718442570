"""
Sales order lifecycle tests (PENDING -> CONFIRMED -> FULFILLED -> SHIPPED -> DELIVERED).
"""

import pytest

from ims.errors import (
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotEditableError,
    ValidationError,
)
from ims.extensions import db
from ims.services import catalog_service
from ims.services import sales_order_service as so_service
from ims.services import stock_ledger_service as ledger


@pytest.fixture
def pending_order(db_session, customer, warehouse, stocked_product):
    return so_service.create_sales_order(
        customer.id,
        warehouse.id,
        tax_cents=80,
        shipping_cents=500,
        items=[{"product_id": stocked_product.id, "quantity": 30}],
    )


@pytest.fixture
def confirmed_order(pending_order):
    return so_service.confirm_sales_order(pending_order.id)


@pytest.fixture
def fulfilled_order(confirmed_order):
    return so_service.fulfill_sales_order(confirmed_order.id, performed_by_user_id=3)


class TestSalesOrderCreate:

    def test_create_snapshots_customer_and_prices(self, pending_order, customer):
        assert pending_order.status == so_service.SO_STATUS_PENDING
        assert pending_order.so_number.startswith("SO-")
        assert pending_order.customer_name == "Jane Doe"
        assert pending_order.customer_email == "jane@example.com"
        assert pending_order.shipping_address == "1 Main St"

        items = so_service.get_items(pending_order.id)
        assert items[0].unit_price_cents == 1000
        assert pending_order.subtotal_cents == 30000
        assert pending_order.total_cents == 30000 + 80 + 500

    def test_customer_edit_does_not_touch_order_snapshot(self, pending_order, customer):
        catalog_service.update_customer(customer.id, first_name="Janet", email="janet@example.com")

        order = so_service.get_sales_order(pending_order.id)
        assert order.customer_name == "Jane Doe"
        assert order.customer_email == "jane@example.com"

    def test_explicit_price_overrides_product_price(self, pending_order, stocked_product):
        item = so_service.add_item(pending_order.id, stocked_product.id, 1, unit_price_cents=750)
        assert item.line_total_cents == 750
        assert so_service.get_sales_order(pending_order.id).subtotal_cents == 30750

    def test_inactive_product_rejected(self, pending_order, stocked_product):
        catalog_service.set_product_active(stocked_product.id, False)
        with pytest.raises(ValidationError):
            so_service.add_item(pending_order.id, stocked_product.id, 1)

    def test_only_pending_is_editable(self, confirmed_order, stocked_product):
        with pytest.raises(OrderNotEditableError):
            so_service.add_item(confirmed_order.id, stocked_product.id, 1)
        with pytest.raises(OrderNotEditableError):
            so_service.update_charges(confirmed_order.id, tax_cents=0)


class TestConfirmAndFulfill:

    def test_confirm_checks_but_does_not_deduct(self, confirmed_order, warehouse, stocked_product):
        assert confirmed_order.status == so_service.SO_STATUS_CONFIRMED
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100

    def test_confirm_without_items(self, db_session, customer, warehouse):
        order = so_service.create_sales_order(customer.id, warehouse.id)
        with pytest.raises(InvalidTransitionError):
            so_service.confirm_sales_order(order.id)

    def test_confirm_short_stock(self, db_session, customer, warehouse, stocked_product):
        order = so_service.create_sales_order(
            customer.id, warehouse.id, items=[{"product_id": stocked_product.id, "quantity": 101}]
        )
        with pytest.raises(InsufficientStockError):
            so_service.confirm_sales_order(order.id)
        assert so_service.get_sales_order(order.id).status == so_service.SO_STATUS_PENDING

    def test_fulfill_deducts_with_shipment_movements(self, fulfilled_order, warehouse, stocked_product):
        assert fulfilled_order.status == so_service.SO_STATUS_FULFILLED
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 70

        movements = ledger.list_movements(reference_number=fulfilled_order.so_number)
        assert len(movements) == 1
        assert movements[0].movement_type == ledger.MOVEMENT_TYPE_SHIPMENT
        assert movements[0].performed_by_user_id == 3

    def test_fulfill_aggregates_duplicate_lines(self, pending_order, warehouse, stocked_product):
        so_service.add_item(pending_order.id, stocked_product.id, 60)
        so_service.confirm_sales_order(pending_order.id)

        # Another order drains stock between confirm and fulfill
        ledger.remove_stock(stocked_product.id, warehouse.id, 20)

        with pytest.raises(InsufficientStockError) as exc_info:
            so_service.fulfill_sales_order(pending_order.id)

        shortage = exc_info.value.details["shortages"][0]
        assert shortage["requested"] == 90
        assert shortage["available"] == 80
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 80
        assert so_service.get_sales_order(pending_order.id).status == so_service.SO_STATUS_CONFIRMED

    def test_fulfill_requires_confirmed(self, pending_order):
        with pytest.raises(InvalidTransitionError):
            so_service.fulfill_sales_order(pending_order.id)

    def test_failed_line_is_compensated(self, db_session, monkeypatch, customer, warehouse, stocked_product):
        other = catalog_service.create_product("GADGET-1", "Gadget", 2500)
        ledger.add_stock(other.id, warehouse.id, 10, ledger.MOVEMENT_TYPE_RECEIPT)
        order = so_service.create_sales_order(
            customer.id,
            warehouse.id,
            items=[
                {"product_id": stocked_product.id, "quantity": 5},
                {"product_id": other.id, "quantity": 5},
            ],
        )
        so_service.confirm_sales_order(order.id)

        original_remove_stock = ledger.remove_stock

        def failing_remove_stock(product_id, *args, **kwargs):
            if product_id == other.id:
                raise InsufficientStockError("Taken by a concurrent order")
            return original_remove_stock(product_id, *args, **kwargs)

        monkeypatch.setattr(so_service.stock_ledger, "remove_stock", failing_remove_stock)

        with pytest.raises(InsufficientStockError):
            so_service.fulfill_sales_order(order.id, commit=False)

        # The caller keeps its transaction: the log must still match the stock
        db.session.commit()

        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100
        assert ledger.get_quantity(other.id, warehouse.id) == 10
        assert ledger.list_movements(reference_number=order.so_number) == []
        assert so_service.get_sales_order(order.id).status == so_service.SO_STATUS_CONFIRMED


class TestShipDeliverCancel:

    def test_ship_and_deliver(self, fulfilled_order):
        order = so_service.ship_sales_order(fulfilled_order.id)
        assert order.status == so_service.SO_STATUS_SHIPPED
        assert order.shipped_date is not None

        order = so_service.deliver_sales_order(fulfilled_order.id)
        assert order.status == so_service.SO_STATUS_DELIVERED
        assert order.delivered_date is not None

    def test_cannot_skip_states(self, confirmed_order):
        with pytest.raises(InvalidTransitionError):
            so_service.ship_sales_order(confirmed_order.id)
        with pytest.raises(InvalidTransitionError):
            so_service.deliver_sales_order(confirmed_order.id)

    def test_cancel_pending_or_confirmed_touches_no_stock(self, confirmed_order, warehouse, stocked_product):
        order = so_service.cancel_sales_order(confirmed_order.id, "Customer changed mind")

        assert order.status == so_service.SO_STATUS_CANCELLED
        assert "[CANCELLED] Customer changed mind" in order.notes
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100

    def test_cancel_fulfilled_returns_stock(self, fulfilled_order, warehouse, stocked_product):
        so_service.cancel_sales_order(fulfilled_order.id, performed_by_user_id=3)

        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100
        latest = ledger.list_movements(reference_number=fulfilled_order.so_number, limit=1)[0]
        assert latest.movement_type == ledger.MOVEMENT_TYPE_ADJUSTMENT
        assert latest.to_warehouse_id == warehouse.id

    def test_cancel_after_shipping_rejected(self, fulfilled_order):
        so_service.ship_sales_order(fulfilled_order.id)
        with pytest.raises(InvalidTransitionError):
            so_service.cancel_sales_order(fulfilled_order.id)

    def test_cancel_twice_rejected(self, pending_order):
        so_service.cancel_sales_order(pending_order.id)
        with pytest.raises(InvalidTransitionError):
            so_service.cancel_sales_order(pending_order.id)
