from __future__ import annotations

from ..extensions import db
from ims.time_utils import to_utc_z, to_iso_date


class PurchaseOrder(db.Model):
    """
    Supplier order header.

    LIFECYCLE:
    1. DRAFT: editable, lines added/removed
    2. SUBMITTED: sent for approval (still editable; reject returns it to DRAFT)
    3. APPROVED: locked, awaiting goods (partial receipts keep it here)
    4. RECEIVED: every line fully received (terminal)
    5. CANCELLED: from DRAFT/SUBMITTED/APPROVED (terminal)

    Items reference the order by purchase_order_id; there is no back-collection.
    Totals: total = subtotal + tax - discount.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.Index("ix_purchase_orders_supplier_status", "supplier_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(32), nullable=False, unique=True)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)

    order_date = db.Column(db.Date, nullable=False)
    expected_delivery_date = db.Column(db.Date, nullable=True)
    actual_delivery_date = db.Column(db.Date, nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, items=None) -> dict:
        data = {
            "id": self.id,
            "po_number": self.po_number,
            "supplier_id": self.supplier_id,
            "warehouse_id": self.warehouse_id,
            "status": self.status,
            "order_date": to_iso_date(self.order_date),
            "expected_delivery_date": to_iso_date(self.expected_delivery_date),
            "actual_delivery_date": to_iso_date(self.actual_delivery_date),
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "approved_at": to_utc_z(self.approved_at),
            "created_at": to_utc_z(self.created_at),
        }
        if items is not None:
            data["items"] = [item.to_dict() for item in items]
        return data


class PurchaseOrderItem(db.Model):
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.CheckConstraint("quantity_ordered > 0", name="ck_po_items_qty_positive"),
        db.CheckConstraint(
            "quantity_received >= 0 AND quantity_received <= quantity_ordered",
            name="ck_po_items_received_range",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_ordered = db.Column(db.Integer, nullable=False)
    quantity_received = db.Column(db.Integer, nullable=False, default=0)

    unit_price_cents = db.Column(db.Integer, nullable=False)
    # quantity_ordered * unit_price_cents
    line_total_cents = db.Column(db.Integer, nullable=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def quantity_outstanding(self) -> int:
        return self.quantity_ordered - (self.quantity_received or 0)

    @property
    def is_fully_received(self) -> bool:
        return self.quantity_outstanding == 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "quantity_ordered": self.quantity_ordered,
            "quantity_received": self.quantity_received,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }
