from __future__ import annotations

from ..extensions import db
from ims.time_utils import to_utc_z, to_iso_date


class Invoice(db.Model):
    """
    Customer invoice generated from a sales order (one per order).

    BALANCE IDENTITY:
    balance_due_cents == total_cents - paid_cents, and 0 <= paid <= total.
    Both are enforced by CHECK constraints as well as by the billing service.

    STATUS:
    DRAFT -> SENT -> PARTIAL -> PAID
    SENT/PARTIAL -> OVERDUE (past due date); unpaid invoices -> CANCELLED
    PARTIAL/PAID are derived from payments, never set by hand.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.CheckConstraint("paid_cents >= 0 AND paid_cents <= total_cents", name="ck_invoices_paid_range"),
        db.CheckConstraint("balance_due_cents = total_cents - paid_cents", name="ck_invoices_balance_identity"),
        db.Index("ix_invoices_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True)

    sales_order_id = db.Column(db.Integer, db.ForeignKey("sales_orders.id"), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    invoice_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_due_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="DRAFT")

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "sales_order_id": self.sales_order_id,
            "customer_id": self.customer_id,
            "invoice_date": to_iso_date(self.invoice_date),
            "due_date": to_iso_date(self.due_date),
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "balance_due_cents": self.balance_due_cents,
            "status": self.status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    Payment received from a customer, optionally against an invoice/order.

    LIFECYCLE:
    PENDING -> COMPLETED -> REFUNDED
    PENDING -> FAILED
    Only COMPLETED payments count towards an invoice and only they can be refunded.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        db.CheckConstraint(
            "refund_amount_cents IS NULL OR refund_amount_cents <= amount_cents",
            name="ck_payments_refund_bound",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_number = db.Column(db.String(32), nullable=False, unique=True)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    sales_order_id = db.Column(db.Integer, db.ForeignKey("sales_orders.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    payment_date = db.Column(db.Date, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    reference_number = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    processed_by_user_id = db.Column(db.Integer, nullable=True)

    refund_amount_cents = db.Column(db.Integer, nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_number": self.payment_number,
            "invoice_id": self.invoice_id,
            "sales_order_id": self.sales_order_id,
            "customer_id": self.customer_id,
            "payment_date": to_iso_date(self.payment_date),
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "processed_by_user_id": self.processed_by_user_id,
            "refund_amount_cents": self.refund_amount_cents,
            "refund_reason": self.refund_reason,
            "refunded_at": to_utc_z(self.refunded_at),
            "created_at": to_utc_z(self.created_at),
        }
