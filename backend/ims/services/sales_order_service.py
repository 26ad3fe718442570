# backend/ims/services/sales_order_service.py
"""
Sales order state machine.

LIFECYCLE:
1. PENDING: created, lines editable
2. CONFIRMED: availability checked (nothing deducted yet)
3. FULFILLED: stock removed for every line (all-or-nothing)
4. SHIPPED: handed to a carrier (see shipment_service)
5. DELIVERED: terminal
6. CANCELLED: from PENDING/CONFIRMED (no stock effect) or FULFILLED
   (deducted stock is returned first); terminal

SNAPSHOT: customer name/email are copied onto the order when it is created
and are not re-synced when the customer record changes later.
"""
from __future__ import annotations

from datetime import date

import structlog

from ..errors import (
    ConcurrentModificationError,
    IMSError,
    InsufficientStockError,
    InvalidAmountError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotEditableError,
    ValidationError,
)
from ..extensions import db
from ..models import Customer, SalesOrder, SalesOrderItem
from ..time_utils import today
from . import stock_ledger_service as stock_ledger
from .concurrency import atomic
from .document_service import next_document_number
from .identity_service import resolve_user

logger = structlog.get_logger(__name__)


# Sales order status constants
SO_STATUS_PENDING = "PENDING"
SO_STATUS_CONFIRMED = "CONFIRMED"
SO_STATUS_FULFILLED = "FULFILLED"
SO_STATUS_SHIPPED = "SHIPPED"
SO_STATUS_DELIVERED = "DELIVERED"
SO_STATUS_CANCELLED = "CANCELLED"

CANCELLABLE_STATUSES = {SO_STATUS_PENDING, SO_STATUS_CONFIRMED, SO_STATUS_FULFILLED}


def get_sales_order(order_id: int) -> SalesOrder:
    order = db.session.get(SalesOrder, order_id)
    if not order:
        raise NotFoundError("SalesOrder", order_id)
    return order


def get_items(order_id: int) -> list[SalesOrderItem]:
    return (
        db.session.query(SalesOrderItem)
        .filter_by(sales_order_id=order_id)
        .order_by(SalesOrderItem.id.asc())
        .all()
    )


def list_sales_orders(*, status: str | None = None, customer_id: int | None = None) -> list[SalesOrder]:
    query = db.session.query(SalesOrder)
    if status:
        query = query.filter(SalesOrder.status == status)
    if customer_id is not None:
        query = query.filter(SalesOrder.customer_id == customer_id)
    return query.order_by(SalesOrder.id.desc()).all()


def _append_note(order: SalesOrder, note: str) -> None:
    order.notes = f"{order.notes}\n{note}" if order.notes else note


def _recalculate_totals(order: SalesOrder) -> None:
    """total = subtotal + tax + shipping."""
    subtotal = sum(item.line_total_cents for item in get_items(order.id))
    order.subtotal_cents = subtotal
    order.total_cents = subtotal + (order.tax_cents or 0) + (order.shipping_cents or 0)


def _require_pending(order: SalesOrder) -> None:
    if order.status != SO_STATUS_PENDING:
        raise OrderNotEditableError(
            f"Sales order {order.so_number} cannot be modified in {order.status} status",
            {"status": order.status},
        )


def _require_status(order: SalesOrder, expected: str, action: str) -> None:
    if order.status != expected:
        raise InvalidTransitionError(
            f"Cannot {action} sales order in {order.status} status",
            {"status": order.status, "expected": expected},
        )


def _required_quantities(items: list[SalesOrderItem]) -> dict[int, int]:
    """Total quantity per product across all lines (duplicate products are summed)."""
    required: dict[int, int] = {}
    for item in items:
        required[item.product_id] = required.get(item.product_id, 0) + item.quantity
    return required


def _validate_availability(order: SalesOrder, items: list[SalesOrderItem]) -> None:
    """
    Raise InsufficientStockError listing every short product.

    WHY: Checking the aggregated requirement up front means fulfillment
    never starts deducting when it is already known to fail.
    """
    shortages = []
    for product_id, quantity in _required_quantities(items).items():
        available = stock_ledger.get_quantity(product_id, order.warehouse_id)
        if available < quantity:
            shortages.append({
                "product_id": product_id,
                "available": available,
                "requested": quantity,
            })
    if shortages:
        raise InsufficientStockError(
            f"Insufficient stock to fulfill sales order {order.so_number}",
            {"warehouse_id": order.warehouse_id, "shortages": shortages},
        )


def _check_charges(tax_cents, shipping_cents) -> None:
    if tax_cents is not None and tax_cents < 0:
        raise InvalidAmountError("Tax cannot be negative")
    if shipping_cents is not None and shipping_cents < 0:
        raise InvalidAmountError("Shipping cost cannot be negative")


def _add_item_row(order: SalesOrder, product_id: int, quantity: int, unit_price_cents: int | None) -> SalesOrderItem:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidAmountError("Quantity must be a positive integer")
    product = stock_ledger.get_product(product_id)
    if not product.is_active:
        raise ValidationError(f"Product {product.sku} is inactive")
    price = product.unit_price_cents if unit_price_cents is None else unit_price_cents
    if price < 0:
        raise InvalidAmountError("Unit price cannot be negative")

    item = SalesOrderItem(
        sales_order_id=order.id,
        product_id=product_id,
        quantity=quantity,
        unit_price_cents=price,
        line_total_cents=quantity * price,
    )
    db.session.add(item)
    db.session.flush()
    return item


def create_sales_order(
    customer_id: int,
    warehouse_id: int,
    *,
    order_date: date | None = None,
    required_date: date | None = None,
    tax_cents: int = 0,
    shipping_cents: int = 0,
    shipping_address: str | None = None,
    notes: str | None = None,
    created_by_user_id: int | None = None,
    items: list[dict] | tuple = (),
    commit: bool = True,
) -> SalesOrder:
    """
    Create a PENDING sales order.

    Args:
        items: [{"product_id", "quantity", "unit_price_cents" (optional,
               defaults to the product's unit price)}, ...]

    Raises:
        NotFoundError: Unknown customer/warehouse/product/user
        ValidationError: Inactive customer/warehouse/product
    """
    def _op() -> SalesOrder:
        customer = db.session.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("Customer", customer_id)
        if not customer.is_active:
            raise ValidationError(f"Customer {customer.email} is inactive")
        stock_ledger.get_warehouse(warehouse_id, require_active=True)
        resolve_user(created_by_user_id)
        _check_charges(tax_cents, shipping_cents)

        order = SalesOrder(
            so_number=next_document_number(document_type="SALES_ORDER", prefix="SO"),
            customer_id=customer.id,
            customer_name=customer.full_name,
            customer_email=customer.email,
            warehouse_id=warehouse_id,
            status=SO_STATUS_PENDING,
            order_date=order_date or today(),
            required_date=required_date,
            tax_cents=tax_cents,
            shipping_cents=shipping_cents,
            shipping_address=shipping_address or customer.shipping_address,
            notes=notes,
            created_by_user_id=created_by_user_id,
        )
        db.session.add(order)
        db.session.flush()

        for line in items:
            _add_item_row(order, line["product_id"], line["quantity"], line.get("unit_price_cents"))

        _recalculate_totals(order)
        db.session.flush()

        logger.info("sales_order.created", order_id=order.id, so_number=order.so_number)
        return order

    return atomic(_op, commit=commit, operation="create_sales_order")


def add_item(
    order_id: int,
    product_id: int,
    quantity: int,
    unit_price_cents: int | None = None,
    *,
    commit: bool = True,
) -> SalesOrderItem:
    def _op() -> SalesOrderItem:
        order = get_sales_order(order_id)
        _require_pending(order)
        item = _add_item_row(order, product_id, quantity, unit_price_cents)
        _recalculate_totals(order)
        db.session.flush()
        return item

    return atomic(_op, commit=commit, operation="add_sales_order_item")


def remove_item(order_id: int, item_id: int, *, commit: bool = True) -> SalesOrder:
    def _op() -> SalesOrder:
        order = get_sales_order(order_id)
        _require_pending(order)
        item = db.session.get(SalesOrderItem, item_id)
        if not item or item.sales_order_id != order.id:
            raise NotFoundError("SalesOrderItem", item_id)
        db.session.delete(item)
        db.session.flush()
        _recalculate_totals(order)
        db.session.flush()
        return order

    return atomic(_op, commit=commit, operation="remove_sales_order_item")


def update_charges(
    order_id: int,
    *,
    tax_cents: int | None = None,
    shipping_cents: int | None = None,
    commit: bool = True,
) -> SalesOrder:
    def _op() -> SalesOrder:
        order = get_sales_order(order_id)
        _require_pending(order)
        _check_charges(tax_cents, shipping_cents)
        if tax_cents is not None:
            order.tax_cents = tax_cents
        if shipping_cents is not None:
            order.shipping_cents = shipping_cents
        _recalculate_totals(order)
        db.session.flush()
        return order

    return atomic(_op, commit=commit, operation="update_sales_order_charges")


def confirm_sales_order(order_id: int, *, commit: bool = True) -> SalesOrder:
    """
    PENDING -> CONFIRMED.

    Checks that the warehouse can cover every line but deducts nothing;
    stock is only removed on fulfill.

    Raises:
        InvalidTransitionError: Not PENDING, or no items
        InsufficientStockError: Some product is short
    """
    def _op() -> SalesOrder:
        order = get_sales_order(order_id)
        _require_status(order, SO_STATUS_PENDING, "confirm")
        items = get_items(order.id)
        if not items:
            raise InvalidTransitionError(f"Cannot confirm sales order {order.so_number} without items")
        _validate_availability(order, items)

        order.status = SO_STATUS_CONFIRMED
        db.session.flush()
        logger.info("sales_order.confirmed", order_id=order.id)
        return order

    return atomic(_op, commit=commit, operation="confirm_sales_order")


def fulfill_sales_order(
    order_id: int,
    *,
    performed_by_user_id: int | None = None,
    commit: bool = True,
) -> SalesOrder:
    """
    CONFIRMED -> FULFILLED, removing stock for every line.

    ALL-OR-NOTHING:
    1. Validate aggregated availability for all lines (no deduction yet)
    2. Remove line by line without movements
    3. If a removal still fails (e.g. a concurrent writer), re-add the lines
       already removed and raise; the order stays CONFIRMED
    4. Once every line is out, write one SHIPMENT movement per line
       referencing the SO number

    Raises:
        InvalidTransitionError: Not CONFIRMED
        InsufficientStockError: Any line short (nothing deducted)
        ConcurrentModificationError: A stock record changed under us
    """
    def _op() -> SalesOrder:
        order = get_sales_order(order_id)
        _require_status(order, SO_STATUS_CONFIRMED, "fulfill")
        resolve_user(performed_by_user_id)
        items = get_items(order.id)
        _validate_availability(order, items)

        removed: list[SalesOrderItem] = []
        try:
            for item in items:
                stock_ledger.remove_stock(
                    item.product_id,
                    order.warehouse_id,
                    item.quantity,
                    stock_ledger.MOVEMENT_TYPE_SHIPMENT,
                    reference_number=order.so_number,
                    performed_by_user_id=performed_by_user_id,
                    record_movement_entry=False,
                    commit=False,
                )
                removed.append(item)
        except ConcurrentModificationError:
            raise
        except IMSError as exc:
            logger.warning("sales_order.fulfill_compensating", order_id=order.id, code=exc.code, removed=len(removed))
            for item in reversed(removed):
                stock_ledger.add_stock(
                    item.product_id,
                    order.warehouse_id,
                    item.quantity,
                    stock_ledger.MOVEMENT_TYPE_ADJUSTMENT,
                    record_movement_entry=False,
                    commit=False,
                )
            raise

        for item in items:
            stock_ledger.record_movement(
                product_id=item.product_id,
                movement_type=stock_ledger.MOVEMENT_TYPE_SHIPMENT,
                quantity=item.quantity,
                from_warehouse_id=order.warehouse_id,
                reference_number=order.so_number,
                performed_by_user_id=performed_by_user_id,
            )

        order.status = SO_STATUS_FULFILLED
        db.session.flush()
        logger.info("sales_order.fulfilled", order_id=order.id, lines=len(items))
        return order

    return atomic(_op, commit=commit, operation="fulfill_sales_order")


def ship_sales_order(order_id: int, shipped_date: date | None = None, *, commit: bool = True) -> SalesOrder:
    """FULFILLED -> SHIPPED."""
    def _op() -> SalesOrder:
        order = get_sales_order(order_id)
        mark_shipped(order, shipped_date)
        return order

    return atomic(_op, commit=commit, operation="ship_sales_order")


def deliver_sales_order(order_id: int, delivered_date: date | None = None, *, commit: bool = True) -> SalesOrder:
    """SHIPPED -> DELIVERED."""
    def _op() -> SalesOrder:
        order = get_sales_order(order_id)
        mark_delivered(order, delivered_date)
        return order

    return atomic(_op, commit=commit, operation="deliver_sales_order")


def mark_shipped(order: SalesOrder, shipped_date: date | None = None) -> None:
    """Transition helper shared with shipment_service (no unit of work)."""
    _require_status(order, SO_STATUS_FULFILLED, "ship")
    order.status = SO_STATUS_SHIPPED
    order.shipped_date = shipped_date or today()
    db.session.flush()
    logger.info("sales_order.shipped", order_id=order.id)


def mark_delivered(order: SalesOrder, delivered_date: date | None = None) -> None:
    """Transition helper shared with shipment_service (no unit of work)."""
    _require_status(order, SO_STATUS_SHIPPED, "deliver")
    order.status = SO_STATUS_DELIVERED
    order.delivered_date = delivered_date or today()
    db.session.flush()
    logger.info("sales_order.delivered", order_id=order.id)


def cancel_sales_order(
    order_id: int,
    reason: str | None = None,
    *,
    performed_by_user_id: int | None = None,
    commit: bool = True,
) -> SalesOrder:
    """
    Cancel an order.

    - PENDING/CONFIRMED: status change only (stock was never deducted)
    - FULFILLED: every line is returned to the warehouse (ADJUSTMENT
      movements) before the status changes
    - SHIPPED/DELIVERED/CANCELLED: rejected; goods have left the building

    Raises:
        InvalidTransitionError: Order past FULFILLED or already cancelled
    """
    def _op() -> SalesOrder:
        order = get_sales_order(order_id)
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot cancel sales order in {order.status} status",
                {"status": order.status},
            )
        resolve_user(performed_by_user_id)

        if order.status == SO_STATUS_FULFILLED:
            for item in get_items(order.id):
                stock_ledger.add_stock(
                    item.product_id,
                    order.warehouse_id,
                    item.quantity,
                    stock_ledger.MOVEMENT_TYPE_ADJUSTMENT,
                    reason="Sales order cancelled",
                    reference_number=order.so_number,
                    performed_by_user_id=performed_by_user_id,
                    commit=False,
                )

        order.status = SO_STATUS_CANCELLED
        if reason:
            _append_note(order, f"[CANCELLED] {reason}")
        db.session.flush()
        logger.info("sales_order.cancelled", order_id=order.id)
        return order

    return atomic(_op, commit=commit, operation="cancel_sales_order")
