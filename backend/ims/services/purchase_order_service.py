# backend/ims/services/purchase_order_service.py
"""
Purchase order state machine.

LIFECYCLE:
1. DRAFT: created, lines added/removed
2. SUBMITTED: awaiting approval (still editable; reject returns it to DRAFT)
3. APPROVED: locked; receipts post stock (partial receipts stay APPROVED)
4. RECEIVED: every line fully received (terminal)
5. CANCELLED: from DRAFT/SUBMITTED/APPROVED (terminal)

Receiving is the only transition with stock effects: each received quantity
is posted to the order's warehouse as a RECEIPT movement referencing the
PO number.
"""
from __future__ import annotations

from datetime import date

import structlog

from ..errors import (
    ConcurrentModificationError,
    IMSError,
    InvalidAmountError,
    InvalidOrderStatusTransitionError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotEditableError,
    OverReceiptError,
    ValidationError,
)
from ..extensions import db
from ..models import PurchaseOrder, PurchaseOrderItem, Supplier
from ..time_utils import today, utcnow
from . import stock_ledger_service as stock_ledger
from .concurrency import atomic
from .document_service import next_document_number
from .identity_service import resolve_user

logger = structlog.get_logger(__name__)


# Purchase order status constants
PO_STATUS_DRAFT = "DRAFT"
PO_STATUS_SUBMITTED = "SUBMITTED"
PO_STATUS_APPROVED = "APPROVED"
PO_STATUS_RECEIVED = "RECEIVED"
PO_STATUS_CANCELLED = "CANCELLED"

EDITABLE_STATUSES = {PO_STATUS_DRAFT, PO_STATUS_SUBMITTED}
CANCELLABLE_STATUSES = {PO_STATUS_DRAFT, PO_STATUS_SUBMITTED, PO_STATUS_APPROVED}


def get_purchase_order(order_id: int) -> PurchaseOrder:
    order = db.session.get(PurchaseOrder, order_id)
    if not order:
        raise NotFoundError("PurchaseOrder", order_id)
    return order


def get_items(order_id: int) -> list[PurchaseOrderItem]:
    return (
        db.session.query(PurchaseOrderItem)
        .filter_by(purchase_order_id=order_id)
        .order_by(PurchaseOrderItem.id.asc())
        .all()
    )


def list_purchase_orders(*, status: str | None = None, supplier_id: int | None = None) -> list[PurchaseOrder]:
    query = db.session.query(PurchaseOrder)
    if status:
        query = query.filter(PurchaseOrder.status == status)
    if supplier_id is not None:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)
    return query.order_by(PurchaseOrder.id.desc()).all()


def _append_note(order: PurchaseOrder, note: str) -> None:
    order.notes = f"{order.notes}\n{note}" if order.notes else note


def _recalculate_totals(order: PurchaseOrder) -> None:
    """total = subtotal + tax - discount."""
    subtotal = sum(item.line_total_cents for item in get_items(order.id))
    order.subtotal_cents = subtotal
    order.total_cents = subtotal + (order.tax_cents or 0) - (order.discount_cents or 0)


def _require_editable(order: PurchaseOrder) -> None:
    if order.status not in EDITABLE_STATUSES:
        raise OrderNotEditableError(
            f"Purchase order {order.po_number} cannot be modified in {order.status} status",
            {"status": order.status},
        )


def _require_status(order: PurchaseOrder, expected: str, action: str) -> None:
    if order.status != expected:
        raise InvalidTransitionError(
            f"Cannot {action} purchase order in {order.status} status",
            {"status": order.status, "expected": expected},
        )


def _check_charges(tax_cents, discount_cents) -> None:
    if tax_cents is not None and tax_cents < 0:
        raise InvalidAmountError("Tax cannot be negative")
    if discount_cents is not None and discount_cents < 0:
        raise InvalidAmountError("Discount cannot be negative")


def _add_item_row(order: PurchaseOrder, product_id: int, quantity_ordered: int, unit_price_cents: int) -> PurchaseOrderItem:
    if isinstance(quantity_ordered, bool) or not isinstance(quantity_ordered, int) or quantity_ordered <= 0:
        raise InvalidAmountError("Quantity ordered must be a positive integer")
    if unit_price_cents is None or unit_price_cents < 0:
        raise InvalidAmountError("Unit price cannot be negative")
    stock_ledger.get_product(product_id)

    item = PurchaseOrderItem(
        purchase_order_id=order.id,
        product_id=product_id,
        quantity_ordered=quantity_ordered,
        quantity_received=0,
        unit_price_cents=unit_price_cents,
        line_total_cents=quantity_ordered * unit_price_cents,
    )
    db.session.add(item)
    db.session.flush()
    return item


def create_purchase_order(
    supplier_id: int,
    warehouse_id: int,
    *,
    order_date: date | None = None,
    expected_delivery_date: date | None = None,
    tax_cents: int = 0,
    discount_cents: int = 0,
    notes: str | None = None,
    created_by_user_id: int | None = None,
    items: list[dict] | tuple = (),
    commit: bool = True,
) -> PurchaseOrder:
    """
    Create a DRAFT purchase order, optionally with initial lines.

    Args:
        items: [{"product_id", "quantity_ordered", "unit_price_cents"}, ...]

    Raises:
        NotFoundError: Unknown supplier/warehouse/product/user
        ValidationError: Inactive supplier or warehouse
    """
    def _op() -> PurchaseOrder:
        supplier = db.session.get(Supplier, supplier_id)
        if not supplier:
            raise NotFoundError("Supplier", supplier_id)
        if not supplier.is_active:
            raise ValidationError(f"Supplier {supplier.code} is inactive")
        stock_ledger.get_warehouse(warehouse_id, require_active=True)
        resolve_user(created_by_user_id)
        _check_charges(tax_cents, discount_cents)

        order = PurchaseOrder(
            po_number=next_document_number(document_type="PURCHASE_ORDER", prefix="PO"),
            supplier_id=supplier_id,
            warehouse_id=warehouse_id,
            status=PO_STATUS_DRAFT,
            order_date=order_date or today(),
            expected_delivery_date=expected_delivery_date,
            tax_cents=tax_cents,
            discount_cents=discount_cents,
            notes=notes,
            created_by_user_id=created_by_user_id,
        )
        db.session.add(order)
        db.session.flush()

        for line in items:
            _add_item_row(order, line["product_id"], line["quantity_ordered"], line["unit_price_cents"])

        _recalculate_totals(order)
        db.session.flush()

        logger.info("purchase_order.created", order_id=order.id, po_number=order.po_number)
        return order

    return atomic(_op, commit=commit, operation="create_purchase_order")


def add_item(
    order_id: int,
    product_id: int,
    quantity_ordered: int,
    unit_price_cents: int,
    *,
    commit: bool = True,
) -> PurchaseOrderItem:
    """Add a line to a DRAFT/SUBMITTED order and recompute totals."""
    def _op() -> PurchaseOrderItem:
        order = get_purchase_order(order_id)
        _require_editable(order)
        item = _add_item_row(order, product_id, quantity_ordered, unit_price_cents)
        _recalculate_totals(order)
        db.session.flush()
        return item

    return atomic(_op, commit=commit, operation="add_purchase_order_item")


def remove_item(order_id: int, item_id: int, *, commit: bool = True) -> PurchaseOrder:
    """Remove a line from a DRAFT/SUBMITTED order and recompute totals."""
    def _op() -> PurchaseOrder:
        order = get_purchase_order(order_id)
        _require_editable(order)
        item = db.session.get(PurchaseOrderItem, item_id)
        if not item or item.purchase_order_id != order.id:
            raise NotFoundError("PurchaseOrderItem", item_id)
        db.session.delete(item)
        db.session.flush()
        _recalculate_totals(order)
        db.session.flush()
        return order

    return atomic(_op, commit=commit, operation="remove_purchase_order_item")


def update_charges(
    order_id: int,
    *,
    tax_cents: int | None = None,
    discount_cents: int | None = None,
    expected_delivery_date: date | None = None,
    commit: bool = True,
) -> PurchaseOrder:
    def _op() -> PurchaseOrder:
        order = get_purchase_order(order_id)
        _require_editable(order)
        _check_charges(tax_cents, discount_cents)
        if tax_cents is not None:
            order.tax_cents = tax_cents
        if discount_cents is not None:
            order.discount_cents = discount_cents
        if expected_delivery_date is not None:
            order.expected_delivery_date = expected_delivery_date
        _recalculate_totals(order)
        db.session.flush()
        return order

    return atomic(_op, commit=commit, operation="update_purchase_order_charges")


def submit_purchase_order(order_id: int, *, commit: bool = True) -> PurchaseOrder:
    """DRAFT -> SUBMITTED (requires at least one line)."""
    def _op() -> PurchaseOrder:
        order = get_purchase_order(order_id)
        _require_status(order, PO_STATUS_DRAFT, "submit")
        if not get_items(order.id):
            raise InvalidTransitionError(
                f"Cannot submit purchase order {order.po_number} without items",
                {"status": order.status},
            )
        order.status = PO_STATUS_SUBMITTED
        db.session.flush()
        logger.info("purchase_order.submitted", order_id=order.id)
        return order

    return atomic(_op, commit=commit, operation="submit_purchase_order")


def approve_purchase_order(order_id: int, approver_user_id: int | None = None, *, commit: bool = True) -> PurchaseOrder:
    """SUBMITTED -> APPROVED."""
    def _op() -> PurchaseOrder:
        order = get_purchase_order(order_id)
        _require_status(order, PO_STATUS_SUBMITTED, "approve")
        resolve_user(approver_user_id)
        order.status = PO_STATUS_APPROVED
        order.approved_by_user_id = approver_user_id
        order.approved_at = utcnow()
        db.session.flush()
        logger.info("purchase_order.approved", order_id=order.id, approver_user_id=approver_user_id)
        return order

    return atomic(_op, commit=commit, operation="approve_purchase_order")


def reject_purchase_order(order_id: int, reason: str, *, commit: bool = True) -> PurchaseOrder:
    """SUBMITTED -> DRAFT, recording the reason in the notes."""
    def _op() -> PurchaseOrder:
        order = get_purchase_order(order_id)
        _require_status(order, PO_STATUS_SUBMITTED, "reject")
        order.status = PO_STATUS_DRAFT
        _append_note(order, f"[REJECTED] {reason}")
        db.session.flush()
        logger.info("purchase_order.rejected", order_id=order.id)
        return order

    return atomic(_op, commit=commit, operation="reject_purchase_order")


def cancel_purchase_order(order_id: int, reason: str, *, commit: bool = True) -> PurchaseOrder:
    """DRAFT/SUBMITTED/APPROVED -> CANCELLED."""
    def _op() -> PurchaseOrder:
        order = get_purchase_order(order_id)
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot cancel purchase order in {order.status} status",
                {"status": order.status},
            )
        order.status = PO_STATUS_CANCELLED
        _append_note(order, f"[CANCELLED] {reason}")
        db.session.flush()
        logger.info("purchase_order.cancelled", order_id=order.id)
        return order

    return atomic(_op, commit=commit, operation="cancel_purchase_order")


def delete_purchase_order(order_id: int, *, commit: bool = True) -> None:
    """Delete a DRAFT order; its lines are deleted explicitly first."""
    def _op() -> None:
        order = get_purchase_order(order_id)
        if order.status != PO_STATUS_DRAFT:
            raise OrderNotEditableError(
                f"Only DRAFT purchase orders can be deleted (status {order.status})",
                {"status": order.status},
            )
        for item in get_items(order.id):
            db.session.delete(item)
        db.session.flush()
        db.session.delete(order)
        db.session.flush()
        logger.info("purchase_order.deleted", order_id=order_id)

    return atomic(_op, commit=commit, operation="delete_purchase_order")


def receive_purchase_order(
    order_id: int,
    actual_delivery_date: date,
    receipts: list[dict],
    *,
    performed_by_user_id: int | None = None,
    commit: bool = True,
) -> PurchaseOrder:
    """
    Receive goods (full or partial) against an APPROVED order.

    Every receipt line is validated before any stock is posted, so a bad line
    leaves the order and the ledger untouched. If posting fails part-way, the
    quantities already added are removed again before the error propagates.

    Args:
        receipts: [{"item_id": int, "quantity_received": int}, ...]

    Returns:
        PurchaseOrder: RECEIVED when every line is complete, else APPROVED

    Raises:
        InvalidOrderStatusTransitionError: Order not APPROVED
        NotFoundError: Item not on this order
        InvalidAmountError: Non-positive receipt quantity
        OverReceiptError: More than outstanding
    """
    def _op() -> PurchaseOrder:
        order = get_purchase_order(order_id)
        if order.status != PO_STATUS_APPROVED:
            raise InvalidOrderStatusTransitionError(
                f"Cannot receive purchase order in {order.status} status",
                {"status": order.status, "expected": PO_STATUS_APPROVED},
            )
        if not receipts:
            raise ValidationError("At least one receipt line is required")
        resolve_user(performed_by_user_id)

        items = {item.id: item for item in get_items(order.id)}

        # Aggregate per item so duplicate lines cannot sneak past the over-receipt check
        requested: dict[int, int] = {}
        for line in receipts:
            item_id = line["item_id"]
            quantity = line["quantity_received"]
            if item_id not in items:
                raise NotFoundError("PurchaseOrderItem", item_id)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise InvalidAmountError(
                    f"Received quantity must be positive for item {item_id}",
                    {"item_id": item_id, "quantity_received": quantity},
                )
            requested[item_id] = requested.get(item_id, 0) + quantity

        for item_id, quantity in requested.items():
            item = items[item_id]
            if quantity > item.quantity_outstanding:
                raise OverReceiptError(
                    f"Cannot receive {quantity} of item {item_id}; only {item.quantity_outstanding} outstanding",
                    {
                        "item_id": item_id,
                        "quantity_ordered": item.quantity_ordered,
                        "quantity_received": item.quantity_received,
                        "requested": quantity,
                    },
                )

        posted: list[tuple[int, int]] = []
        try:
            for item_id, quantity in requested.items():
                item = items[item_id]
                stock_ledger.add_stock(
                    item.product_id,
                    order.warehouse_id,
                    quantity,
                    stock_ledger.MOVEMENT_TYPE_RECEIPT,
                    reference_number=order.po_number,
                    performed_by_user_id=performed_by_user_id,
                    record_movement_entry=False,
                    commit=False,
                )
                posted.append((item.product_id, quantity))
        except ConcurrentModificationError:
            raise
        except IMSError as exc:
            logger.warning("purchase_order.receive_compensating", order_id=order.id, code=exc.code, posted=len(posted))
            for product_id, quantity in reversed(posted):
                stock_ledger.remove_stock(
                    product_id,
                    order.warehouse_id,
                    quantity,
                    stock_ledger.MOVEMENT_TYPE_ADJUSTMENT,
                    record_movement_entry=False,
                    commit=False,
                )
            raise

        # RECEIPT movements are written only after every line has posted
        for product_id, quantity in posted:
            stock_ledger.record_movement(
                product_id=product_id,
                movement_type=stock_ledger.MOVEMENT_TYPE_RECEIPT,
                quantity=quantity,
                to_warehouse_id=order.warehouse_id,
                reference_number=order.po_number,
                performed_by_user_id=performed_by_user_id,
            )

        for item_id, quantity in requested.items():
            items[item_id].quantity_received = items[item_id].quantity_received + quantity

        order.actual_delivery_date = actual_delivery_date
        if all(item.is_fully_received for item in items.values()):
            order.status = PO_STATUS_RECEIVED
        db.session.flush()

        logger.info(
            "purchase_order.received",
            order_id=order.id,
            po_number=order.po_number,
            lines=len(requested),
            status=order.status,
        )
        return order

    return atomic(_op, commit=commit, operation="receive_purchase_order")
