# backend/ims/services/stock_ledger_service.py
"""
Stock ledger: the single writer of StockRecord quantities.

WHY: Every stock effect in the system (receipts, shipments, transfers,
adjustments, cancellations) goes through add_stock/remove_stock so that
non-negativity, the movement log and optimistic versioning are enforced
in one place.

CONCURRENCY CONTRACT:
- every mutation re-reads the (product, warehouse) record
- callers may pass expected_version for an explicit compare-and-swap
- the write itself is a version-conditioned UPDATE (version_id_col); losing
  the race raises ConcurrentModificationError, never retried here
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    InvalidAmountError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Movement, Product, StockRecord, Warehouse
from ..time_utils import utcnow
from .concurrency import atomic
from .identity_service import resolve_user

logger = structlog.get_logger(__name__)


# Movement type constants
MOVEMENT_TYPE_TRANSFER = "TRANSFER"
MOVEMENT_TYPE_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_TYPE_RECEIPT = "RECEIPT"
MOVEMENT_TYPE_SHIPMENT = "SHIPMENT"

MOVEMENT_TYPES = {
    MOVEMENT_TYPE_TRANSFER,
    MOVEMENT_TYPE_ADJUSTMENT,
    MOVEMENT_TYPE_RECEIPT,
    MOVEMENT_TYPE_SHIPMENT,
}

# Stock status constants
STOCK_STATUS_CRITICAL = "CRITICAL"
STOCK_STATUS_LOW = "LOW"
STOCK_STATUS_NORMAL = "NORMAL"


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product", product_id)
    return product


def get_warehouse(warehouse_id: int, *, require_active: bool = False) -> Warehouse:
    warehouse = db.session.get(Warehouse, warehouse_id)
    if not warehouse:
        raise NotFoundError("Warehouse", warehouse_id)
    if require_active and not warehouse.is_active:
        raise ValidationError(
            f"Warehouse {warehouse.code} is inactive",
            {"warehouse_id": warehouse_id},
        )
    return warehouse


def get_stock_record(product_id: int, warehouse_id: int) -> StockRecord | None:
    return (
        db.session.query(StockRecord)
        .filter_by(product_id=product_id, warehouse_id=warehouse_id)
        .first()
    )


def get_quantity(product_id: int, warehouse_id: int) -> int:
    """Current quantity; 0 (not an error) when no record exists yet."""
    record = get_stock_record(product_id, warehouse_id)
    return record.quantity if record else 0


def get_total_quantity(product_id: int) -> int:
    """Quantity of a product summed over all warehouses."""
    total = (
        db.session.query(func.coalesce(func.sum(StockRecord.quantity), 0))
        .filter(StockRecord.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def list_stock_records(*, product_id: int | None = None, warehouse_id: int | None = None) -> list[StockRecord]:
    query = db.session.query(StockRecord)
    if product_id is not None:
        query = query.filter(StockRecord.product_id == product_id)
    if warehouse_id is not None:
        query = query.filter(StockRecord.warehouse_id == warehouse_id)
    return query.order_by(StockRecord.product_id.asc(), StockRecord.warehouse_id.asc()).all()


def _check_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(
            f"Quantity must be a positive integer, got {amount!r}",
            {"amount": amount},
        )


def _check_movement_type(movement_type: str) -> None:
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(
            f"Unknown movement type {movement_type!r}",
            {"movement_type": movement_type},
        )


def _check_expected_version(record: StockRecord | None, expected_version: int | None) -> None:
    if expected_version is None:
        return
    current = record.version_id if record else 0
    if current != expected_version:
        raise ConcurrentModificationError(
            "Stock record version changed since it was read",
            {"expected_version": expected_version, "current_version": current},
        )


def _create_record(product_id: int, warehouse_id: int) -> StockRecord:
    """Lazily create the (product, warehouse) row at quantity 0."""
    record = StockRecord(product_id=product_id, warehouse_id=warehouse_id, quantity=0)
    db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError as exc:
        # Another writer created the same pair between our read and insert
        db.session.rollback()
        raise ConcurrentModificationError(
            "Stock record was created concurrently",
            {"product_id": product_id, "warehouse_id": warehouse_id},
        ) from exc
    return record


def record_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    from_warehouse_id: int | None = None,
    to_warehouse_id: int | None = None,
    reason: str | None = None,
    reference_number: str | None = None,
    performed_by_user_id: int | None = None,
) -> Movement:
    """Append an immutable movement row (flushes to obtain its id)."""
    _check_movement_type(movement_type)
    _check_amount(quantity)
    if from_warehouse_id is None and to_warehouse_id is None:
        raise ValidationError("Movement needs a source or destination warehouse")

    movement = Movement(
        product_id=product_id,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        quantity=quantity,
        movement_type=movement_type,
        reason=reason,
        reference_number=reference_number,
        performed_by_user_id=performed_by_user_id,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def add_stock(
    product_id: int,
    warehouse_id: int,
    amount: int,
    movement_type: str = MOVEMENT_TYPE_ADJUSTMENT,
    *,
    reason: str | None = None,
    reference_number: str | None = None,
    performed_by_user_id: int | None = None,
    expected_version: int | None = None,
    record_movement_entry: bool = True,
    commit: bool = True,
) -> int:
    """
    Increase stock of a product at a warehouse.

    Args:
        product_id: Product to add
        warehouse_id: Destination warehouse (must be active unless ADJUSTMENT)
        amount: Positive quantity
        movement_type: RECEIPT / ADJUSTMENT / TRANSFER / SHIPMENT
        expected_version: Optional compare-and-swap guard (0 = "no record yet")
        record_movement_entry: False when the caller writes its own movement
        commit: False to join the caller's unit of work

    Returns:
        int: New quantity

    Raises:
        InvalidAmountError: amount <= 0
        NotFoundError: Unknown product/warehouse
        ConcurrentModificationError: Version changed under us
    """
    def _op() -> int:
        _check_amount(amount)
        _check_movement_type(movement_type)
        get_product(product_id)
        # Inactive warehouses accept no new goods; corrections and reversals still post
        get_warehouse(warehouse_id, require_active=movement_type != MOVEMENT_TYPE_ADJUSTMENT)
        resolve_user(performed_by_user_id)

        record = get_stock_record(product_id, warehouse_id)
        _check_expected_version(record, expected_version)
        if record is None:
            record = _create_record(product_id, warehouse_id)

        record.quantity = record.quantity + amount
        record.last_movement_at = utcnow()
        db.session.flush()

        if record_movement_entry:
            record_movement(
                product_id=product_id,
                movement_type=movement_type,
                quantity=amount,
                to_warehouse_id=warehouse_id,
                reason=reason,
                reference_number=reference_number,
                performed_by_user_id=performed_by_user_id,
            )

        logger.info(
            "stock.added",
            product_id=product_id,
            warehouse_id=warehouse_id,
            amount=amount,
            movement_type=movement_type,
            new_quantity=record.quantity,
            version=record.version_id,
        )
        return record.quantity

    return atomic(_op, commit=commit, operation="add_stock")


def remove_stock(
    product_id: int,
    warehouse_id: int,
    amount: int,
    movement_type: str = MOVEMENT_TYPE_ADJUSTMENT,
    *,
    reason: str | None = None,
    reference_number: str | None = None,
    performed_by_user_id: int | None = None,
    expected_version: int | None = None,
    record_movement_entry: bool = True,
    commit: bool = True,
) -> int:
    """
    Decrease stock of a product at a warehouse.

    Never lets quantity go negative.

    Returns:
        int: New quantity

    Raises:
        InvalidAmountError: amount <= 0
        InsufficientStockError: Current quantity < amount
        ConcurrentModificationError: Version changed under us
    """
    def _op() -> int:
        _check_amount(amount)
        _check_movement_type(movement_type)
        get_product(product_id)
        get_warehouse(warehouse_id)
        resolve_user(performed_by_user_id)

        record = get_stock_record(product_id, warehouse_id)
        _check_expected_version(record, expected_version)

        available = record.quantity if record else 0
        if available < amount:
            raise InsufficientStockError(
                f"Insufficient stock for product {product_id} at warehouse {warehouse_id}. "
                f"Available: {available}, requested: {amount}",
                {
                    "product_id": product_id,
                    "warehouse_id": warehouse_id,
                    "available": available,
                    "requested": amount,
                },
            )

        record.quantity = record.quantity - amount
        record.last_movement_at = utcnow()
        db.session.flush()

        if record_movement_entry:
            record_movement(
                product_id=product_id,
                movement_type=movement_type,
                quantity=amount,
                from_warehouse_id=warehouse_id,
                reason=reason,
                reference_number=reference_number,
                performed_by_user_id=performed_by_user_id,
            )

        logger.info(
            "stock.removed",
            product_id=product_id,
            warehouse_id=warehouse_id,
            amount=amount,
            movement_type=movement_type,
            new_quantity=record.quantity,
            version=record.version_id,
        )
        return record.quantity

    return atomic(_op, commit=commit, operation="remove_stock")


def is_low_stock(product_id: int, current_quantity: int) -> bool:
    return current_quantity <= get_product(product_id).reorder_level


def is_critical(product_id: int, current_quantity: int) -> bool:
    return current_quantity <= get_product(product_id).min_stock_level


def stock_status(product_id: int, current_quantity: int) -> str:
    """CRITICAL (<= min level), LOW (<= reorder level) or NORMAL."""
    product = get_product(product_id)
    if current_quantity <= product.min_stock_level:
        return STOCK_STATUS_CRITICAL
    if current_quantity <= product.reorder_level:
        return STOCK_STATUS_LOW
    return STOCK_STATUS_NORMAL


def list_low_stock(warehouse_id: int | None = None) -> list[dict]:
    """
    Stock records at or below their product's reorder level.

    Only pairs that have a record are reported; a product never received at a
    warehouse has nothing to reorder there.
    """
    query = (
        db.session.query(StockRecord, Product)
        .join(Product, Product.id == StockRecord.product_id)
        .filter(Product.is_active.is_(True))
        .filter(StockRecord.quantity <= Product.reorder_level)
    )
    if warehouse_id is not None:
        query = query.filter(StockRecord.warehouse_id == warehouse_id)

    rows = []
    for record, product in query.order_by(StockRecord.quantity.asc(), Product.sku.asc()).all():
        status = STOCK_STATUS_CRITICAL if record.quantity <= product.min_stock_level else STOCK_STATUS_LOW
        rows.append({
            "product_id": product.id,
            "sku": product.sku,
            "warehouse_id": record.warehouse_id,
            "quantity": record.quantity,
            "reorder_level": product.reorder_level,
            "min_stock_level": product.min_stock_level,
            "status": status,
        })
    return rows


def inventory_value_cents(warehouse_id: int | None = None) -> int:
    """Sum of cost_price_cents * quantity (products without cost count as 0)."""
    query = (
        db.session.query(
            func.coalesce(func.sum(StockRecord.quantity * func.coalesce(Product.cost_price_cents, 0)), 0)
        )
        .join(Product, Product.id == StockRecord.product_id)
    )
    if warehouse_id is not None:
        query = query.filter(StockRecord.warehouse_id == warehouse_id)
    return int(query.scalar() or 0)


def list_out_of_stock(warehouse_id: int | None = None) -> list[Product]:
    """Active products with a stock record sitting at zero (anywhere, or at one warehouse)."""
    query = (
        db.session.query(Product)
        .join(StockRecord, StockRecord.product_id == Product.id)
        .filter(Product.is_active.is_(True))
        .filter(StockRecord.quantity == 0)
    )
    if warehouse_id is not None:
        query = query.filter(StockRecord.warehouse_id == warehouse_id)
    return query.distinct().order_by(Product.sku.asc()).all()


def warehouse_statistics(warehouse_id: int) -> dict:
    """
    Stock summary for one warehouse.

    capacity_utilization_percent is total units over capacity (ratio rounded
    half-up to two places), or None when the warehouse has no capacity set.
    """
    warehouse = get_warehouse(warehouse_id)
    rows = (
        db.session.query(StockRecord, Product)
        .join(Product, Product.id == StockRecord.product_id)
        .filter(StockRecord.warehouse_id == warehouse_id)
        .all()
    )

    total_units = sum(record.quantity for record, _ in rows)
    utilization = None
    if warehouse.capacity:
        ratio = (Decimal(total_units) / Decimal(warehouse.capacity)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        utilization = int(ratio * 100)

    return {
        "warehouse_id": warehouse.id,
        "warehouse_name": warehouse.name,
        "total_products": len({record.product_id for record, _ in rows}),
        "total_units": total_units,
        "total_value_cents": sum(record.quantity * (product.cost_price_cents or 0) for record, product in rows),
        "low_stock_products": sum(1 for record, product in rows if record.quantity <= product.reorder_level),
        "out_of_stock_products": sum(1 for record, _ in rows if record.quantity == 0),
        "capacity_utilization_percent": utilization,
    }


def list_movements(
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    movement_type: str | None = None,
    reference_number: str | None = None,
    limit: int | None = None,
) -> list[Movement]:
    """Movement history, newest first. warehouse_id matches either side."""
    query = db.session.query(Movement)
    if product_id is not None:
        query = query.filter(Movement.product_id == product_id)
    if warehouse_id is not None:
        query = query.filter(
            (Movement.from_warehouse_id == warehouse_id) | (Movement.to_warehouse_id == warehouse_id)
        )
    if movement_type is not None:
        query = query.filter(Movement.movement_type == movement_type)
    if reference_number is not None:
        query = query.filter(Movement.reference_number == reference_number)
    query = query.order_by(Movement.occurred_at.desc(), Movement.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()
