from __future__ import annotations

from ..extensions import db
from ims.time_utils import to_utc_z, to_iso_date


class SalesOrder(db.Model):
    """
    Customer order header.

    LIFECYCLE:
    PENDING -> CONFIRMED -> FULFILLED -> SHIPPED -> DELIVERED
    PENDING/CONFIRMED/FULFILLED -> CANCELLED (FULFILLED returns stock first)

    SNAPSHOT: customer_name/customer_email are copied from the customer at
    creation; later customer edits do not propagate.
    Totals: total = subtotal + tax + shipping.
    """
    __tablename__ = "sales_orders"
    __table_args__ = (
        db.Index("ix_sales_orders_customer_status", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    so_number = db.Column(db.String(32), nullable=False, unique=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    customer_name = db.Column(db.String(128), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    order_date = db.Column(db.Date, nullable=False)
    required_date = db.Column(db.Date, nullable=True)
    shipped_date = db.Column(db.Date, nullable=True)
    delivered_date = db.Column(db.Date, nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    shipping_address = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, items=None) -> dict:
        data = {
            "id": self.id,
            "so_number": self.so_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "warehouse_id": self.warehouse_id,
            "status": self.status,
            "order_date": to_iso_date(self.order_date),
            "required_date": to_iso_date(self.required_date),
            "shipped_date": to_iso_date(self.shipped_date),
            "delivered_date": to_iso_date(self.delivered_date),
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "total_cents": self.total_cents,
            "shipping_address": self.shipping_address,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if items is not None:
            data["items"] = [item.to_dict() for item in items]
        return data


class SalesOrderItem(db.Model):
    __tablename__ = "sales_order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_so_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sales_order_id = db.Column(db.Integer, db.ForeignKey("sales_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    # quantity * unit_price_cents
    line_total_cents = db.Column(db.Integer, nullable=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sales_order_id": self.sales_order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class Shipment(db.Model):
    """
    Physical movement of a fulfilled sales order.

    LIFECYCLE:
    PENDING -> IN_TRANSIT -> DELIVERED
    PENDING/IN_TRANSIT -> FAILED | RETURNED
    DELIVERED, FAILED, RETURNED are terminal.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shipment_number = db.Column(db.String(32), nullable=False, unique=True)

    sales_order_id = db.Column(db.Integer, db.ForeignKey("sales_orders.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    carrier = db.Column(db.String(64), nullable=False)
    tracking_number = db.Column(db.String(64), nullable=True, index=True)
    shipping_method = db.Column(db.String(16), nullable=False, default="STANDARD")
    shipping_address = db.Column(db.String(255), nullable=True)

    shipped_date = db.Column(db.Date, nullable=True)
    estimated_delivery_date = db.Column(db.Date, nullable=True)
    actual_delivery_date = db.Column(db.Date, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shipment_number": self.shipment_number,
            "sales_order_id": self.sales_order_id,
            "warehouse_id": self.warehouse_id,
            "status": self.status,
            "carrier": self.carrier,
            "tracking_number": self.tracking_number,
            "shipping_method": self.shipping_method,
            "shipping_address": self.shipping_address,
            "shipped_date": to_iso_date(self.shipped_date),
            "estimated_delivery_date": to_iso_date(self.estimated_delivery_date),
            "actual_delivery_date": to_iso_date(self.actual_delivery_date),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
