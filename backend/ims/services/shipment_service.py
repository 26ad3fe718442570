# backend/ims/services/shipment_service.py
"""
Shipment state machine.

LIFECYCLE:
PENDING -> IN_TRANSIT -> DELIVERED
PENDING/IN_TRANSIT -> FAILED | RETURNED
DELIVERED, FAILED and RETURNED are terminal.

A shipment can only be created for a FULFILLED sales order; creating it
moves the order to SHIPPED and delivering it moves the order to DELIVERED.
Shipments have no stock effect (stock left on fulfill).
"""
from __future__ import annotations

from datetime import date

import structlog

from ..errors import (
    InvalidTransitionError,
    NotFoundError,
    SalesOrderNotFulfilledError,
    ShipmentAlreadyTerminatedError,
    ShipmentNotEligibleForDeliveryError,
    ValidationError,
)
from ..extensions import db
from ..models import Shipment
from ..time_utils import today
from . import sales_order_service
from .concurrency import atomic
from .document_service import next_document_number

logger = structlog.get_logger(__name__)


# Shipment status constants
SHIPMENT_STATUS_PENDING = "PENDING"
SHIPMENT_STATUS_IN_TRANSIT = "IN_TRANSIT"
SHIPMENT_STATUS_DELIVERED = "DELIVERED"
SHIPMENT_STATUS_FAILED = "FAILED"
SHIPMENT_STATUS_RETURNED = "RETURNED"

TERMINAL_STATUSES = {SHIPMENT_STATUS_DELIVERED, SHIPMENT_STATUS_FAILED, SHIPMENT_STATUS_RETURNED}

SHIPPING_METHODS = {"STANDARD", "EXPRESS", "OVERNIGHT", "GROUND"}


def get_shipment(shipment_id: int) -> Shipment:
    shipment = db.session.get(Shipment, shipment_id)
    if not shipment:
        raise NotFoundError("Shipment", shipment_id)
    return shipment


def list_shipments(*, sales_order_id: int | None = None, status: str | None = None) -> list[Shipment]:
    query = db.session.query(Shipment)
    if sales_order_id is not None:
        query = query.filter(Shipment.sales_order_id == sales_order_id)
    if status:
        query = query.filter(Shipment.status == status)
    return query.order_by(Shipment.id.desc()).all()


def list_overdue_shipments(as_of: date | None = None) -> list[Shipment]:
    """Open shipments whose estimated delivery date is before as_of (default today)."""
    as_of = as_of or today()
    return (
        db.session.query(Shipment)
        .filter(Shipment.status.notin_(TERMINAL_STATUSES))
        .filter(Shipment.estimated_delivery_date < as_of)
        .order_by(Shipment.estimated_delivery_date.asc(), Shipment.id.asc())
        .all()
    )


def _require_not_terminated(shipment: Shipment) -> None:
    if shipment.status in TERMINAL_STATUSES:
        raise ShipmentAlreadyTerminatedError(
            f"Shipment {shipment.shipment_number} is already {shipment.status}",
            {"status": shipment.status},
        )


def create_shipment(
    sales_order_id: int,
    carrier: str,
    *,
    tracking_number: str | None = None,
    shipping_method: str = "STANDARD",
    shipping_address: str | None = None,
    shipped_date: date | None = None,
    estimated_delivery_date: date | None = None,
    notes: str | None = None,
    commit: bool = True,
) -> Shipment:
    """
    Create a PENDING shipment for a FULFILLED order and mark the order SHIPPED.

    Raises:
        SalesOrderNotFulfilledError: Order not FULFILLED
        ValidationError: Unknown shipping method or empty carrier
    """
    def _op() -> Shipment:
        order = sales_order_service.get_sales_order(sales_order_id)
        if order.status != sales_order_service.SO_STATUS_FULFILLED:
            raise SalesOrderNotFulfilledError(
                f"Sales order {order.so_number} must be FULFILLED to ship (status {order.status})",
                {"sales_order_id": order.id, "status": order.status},
            )
        if shipping_method not in SHIPPING_METHODS:
            raise ValidationError(f"Unknown shipping method {shipping_method!r}")
        if not carrier or not carrier.strip():
            raise ValidationError("Carrier is required")

        ship_date = shipped_date or today()
        shipment = Shipment(
            shipment_number=next_document_number(document_type="SHIPMENT", prefix="SHIP"),
            sales_order_id=order.id,
            warehouse_id=order.warehouse_id,
            status=SHIPMENT_STATUS_PENDING,
            carrier=carrier.strip(),
            tracking_number=tracking_number,
            shipping_method=shipping_method,
            shipping_address=shipping_address or order.shipping_address,
            shipped_date=ship_date,
            estimated_delivery_date=estimated_delivery_date,
            notes=notes,
        )
        db.session.add(shipment)
        db.session.flush()

        sales_order_service.mark_shipped(order, ship_date)

        logger.info("shipment.created", shipment_id=shipment.id, sales_order_id=order.id, carrier=shipment.carrier)
        return shipment

    return atomic(_op, commit=commit, operation="create_shipment")


def update_tracking(shipment_id: int, tracking_number: str, *, carrier: str | None = None, commit: bool = True) -> Shipment:
    def _op() -> Shipment:
        shipment = get_shipment(shipment_id)
        _require_not_terminated(shipment)
        shipment.tracking_number = tracking_number
        if carrier:
            shipment.carrier = carrier
        db.session.flush()
        return shipment

    return atomic(_op, commit=commit, operation="update_shipment_tracking")


def mark_in_transit(shipment_id: int, *, commit: bool = True) -> Shipment:
    """PENDING -> IN_TRANSIT."""
    def _op() -> Shipment:
        shipment = get_shipment(shipment_id)
        _require_not_terminated(shipment)
        if shipment.status != SHIPMENT_STATUS_PENDING:
            raise InvalidTransitionError(
                f"Cannot mark shipment in transit from {shipment.status}",
                {"status": shipment.status},
            )
        shipment.status = SHIPMENT_STATUS_IN_TRANSIT
        db.session.flush()
        logger.info("shipment.in_transit", shipment_id=shipment.id)
        return shipment

    return atomic(_op, commit=commit, operation="mark_shipment_in_transit")


def deliver_shipment(shipment_id: int, delivery_date: date | None = None, *, commit: bool = True) -> Shipment:
    """
    PENDING/IN_TRANSIT -> DELIVERED; the sales order follows to DELIVERED.

    Raises:
        ShipmentAlreadyTerminatedError: Shipment already terminal
        ShipmentNotEligibleForDeliveryError: Any other non-deliverable state
    """
    def _op() -> Shipment:
        shipment = get_shipment(shipment_id)
        _require_not_terminated(shipment)
        if shipment.status not in (SHIPMENT_STATUS_PENDING, SHIPMENT_STATUS_IN_TRANSIT):
            raise ShipmentNotEligibleForDeliveryError(
                f"Shipment {shipment.shipment_number} cannot be delivered from {shipment.status}",
                {"status": shipment.status},
            )

        delivered_on = delivery_date or today()
        shipment.status = SHIPMENT_STATUS_DELIVERED
        shipment.actual_delivery_date = delivered_on
        db.session.flush()

        order = sales_order_service.get_sales_order(shipment.sales_order_id)
        if order.status == sales_order_service.SO_STATUS_SHIPPED:
            sales_order_service.mark_delivered(order, delivered_on)

        logger.info("shipment.delivered", shipment_id=shipment.id, sales_order_id=order.id)
        return shipment

    return atomic(_op, commit=commit, operation="deliver_shipment")


def _terminate(shipment_id: int, status: str, reason: str | None, commit: bool) -> Shipment:
    def _op() -> Shipment:
        shipment = get_shipment(shipment_id)
        _require_not_terminated(shipment)
        shipment.status = status
        if reason:
            note = f"[{status}] {reason}"
            shipment.notes = f"{shipment.notes}\n{note}" if shipment.notes else note
        db.session.flush()
        logger.info("shipment.terminated", shipment_id=shipment.id, status=status)
        return shipment

    return atomic(_op, commit=commit, operation=f"shipment_{status.lower()}")


def fail_shipment(shipment_id: int, reason: str | None = None, *, commit: bool = True) -> Shipment:
    """PENDING/IN_TRANSIT -> FAILED."""
    return _terminate(shipment_id, SHIPMENT_STATUS_FAILED, reason, commit)


def return_shipment(shipment_id: int, reason: str | None = None, *, commit: bool = True) -> Shipment:
    """PENDING/IN_TRANSIT -> RETURNED."""
    return _terminate(shipment_id, SHIPMENT_STATUS_RETURNED, reason, commit)
