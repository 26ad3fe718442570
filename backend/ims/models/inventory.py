from __future__ import annotations

from ..extensions import db
from ims.time_utils import to_utc_z


class StockRecord(db.Model):
    """
    Current quantity of one product at one warehouse.

    WHY: The stock ledger is the single writer of this table. Every other
    component changes stock through services/stock_ledger_service.py.

    CONCURRENCY:
    version_id is SQLAlchemy's version_id_col, so every UPDATE is issued as
    "... WHERE id = :id AND version_id = :seen" and bumps the version.
    A lost race surfaces as StaleDataError at flush time, which the unit of
    work translates into ConcurrentModificationError.

    LIFECYCLE:
    Rows are created lazily on the first receipt/transfer into a
    (product, warehouse) pair and are never deleted; quantity 0 is valid.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("product_id", "warehouse_id", name="uq_stock_records_product_warehouse"),
        db.CheckConstraint("quantity >= 0", name="ck_stock_records_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)

    # Optional storage hints carried over from the warehouse floor
    location_code = db.Column(db.String(32), nullable=True)
    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    last_movement_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "quantity": self.quantity,
            "location_code": self.location_code,
            "batch_number": self.batch_number,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "last_movement_at": to_utc_z(self.last_movement_at),
            "version": self.version_id,
        }


class Movement(db.Model):
    """
    Append-only log entry of a quantity change.

    DIRECTION BY TYPE:
    - TRANSFER:   from_warehouse_id and to_warehouse_id both set
    - RECEIPT:    to_warehouse_id only
    - SHIPMENT:   from_warehouse_id only
    - ADJUSTMENT: to_warehouse_id for increases, from_warehouse_id for decreases

    Rows are never updated or deleted.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.CheckConstraint(
            "from_warehouse_id IS NOT NULL OR to_warehouse_id IS NOT NULL",
            name="ck_stock_movements_has_warehouse",
        ),
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    from_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    to_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    movement_type = db.Column(db.String(16), nullable=False, index=True)

    reason = db.Column(db.String(255), nullable=True)
    reference_number = db.Column(db.String(64), nullable=True, index=True)
    performed_by_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "from_warehouse_id": self.from_warehouse_id,
            "to_warehouse_id": self.to_warehouse_id,
            "quantity": self.quantity,
            "movement_type": self.movement_type,
            "reason": self.reason,
            "reference_number": self.reference_number,
            "performed_by_user_id": self.performed_by_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class StockAdjustment(db.Model):
    """
    Two-phase manual stock correction.

    LIFECYCLE:
    1. PENDING: proposed, stock untouched
    2. APPROVED / REJECTED: decided by an approver
    3. applied: APPROVED + applied_at set (terminal, at most once)

    quantity_change is signed; its sign decides add vs remove on apply.
    """
    __tablename__ = "stock_adjustments"
    __table_args__ = (
        db.CheckConstraint("quantity_change <> 0", name="ck_stock_adjustments_nonzero"),
        db.Index("ix_stock_adjustments_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    adjustment_number = db.Column(db.String(32), nullable=False, unique=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    quantity_change = db.Column(db.Integer, nullable=False)
    adjustment_type = db.Column(db.String(16), nullable=False)
    reason = db.Column(db.String(16), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING")

    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    proposed_by_user_id = db.Column(db.Integer, nullable=True)
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_applied(self) -> bool:
        return self.applied_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "adjustment_number": self.adjustment_number,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "quantity_change": self.quantity_change,
            "adjustment_type": self.adjustment_type,
            "reason": self.reason,
            "notes": self.notes,
            "status": self.status,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "proposed_by_user_id": self.proposed_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "decided_at": to_utc_z(self.decided_at),
            "applied_at": to_utc_z(self.applied_at),
            "movement_id": self.movement_id,
            "created_at": to_utc_z(self.created_at),
        }
