# backend/ims/services/adjustment_service.py
"""
Two-phase manual stock corrections.

LIFECYCLE:
1. propose: PENDING record, stock untouched
2. decide:  PENDING -> APPROVED | REJECTED
3. apply:   APPROVED only, exactly once (applied_at guard)

WHY: Shrinkage, damage and count corrections change stock without a source
document, so they require a second person's approval before they post.
"""
from __future__ import annotations

import structlog

from ..errors import (
    AdjustmentAlreadyAppliedError,
    InvalidAmountError,
    InvalidTransitionError,
    NotFoundError,
    PendingApprovalError,
    ValidationError,
)
from ..extensions import db
from ..models import StockAdjustment
from ..time_utils import utcnow
from . import stock_ledger_service as stock_ledger
from .concurrency import atomic
from .document_service import next_document_number
from .identity_service import resolve_user

logger = structlog.get_logger(__name__)


# Adjustment status constants
ADJUSTMENT_STATUS_PENDING = "PENDING"
ADJUSTMENT_STATUS_APPROVED = "APPROVED"
ADJUSTMENT_STATUS_REJECTED = "REJECTED"

ADJUSTMENT_TYPE_ADD = "ADD"
ADJUSTMENT_TYPE_REMOVE = "REMOVE"
ADJUSTMENT_TYPE_CORRECTION = "CORRECTION"
ADJUSTMENT_TYPES = {ADJUSTMENT_TYPE_ADD, ADJUSTMENT_TYPE_REMOVE, ADJUSTMENT_TYPE_CORRECTION}

ADJUSTMENT_REASONS = {"DAMAGED", "EXPIRED", "THEFT", "COUNT_ERROR", "RETURN", "OTHER"}


def get_adjustment(adjustment_id: int) -> StockAdjustment:
    adjustment = db.session.get(StockAdjustment, adjustment_id)
    if not adjustment:
        raise NotFoundError("StockAdjustment", adjustment_id)
    return adjustment


def list_adjustments(*, status: str | None = None, product_id: int | None = None) -> list[StockAdjustment]:
    query = db.session.query(StockAdjustment)
    if status:
        query = query.filter(StockAdjustment.status == status)
    if product_id is not None:
        query = query.filter(StockAdjustment.product_id == product_id)
    return query.order_by(StockAdjustment.id.desc()).all()


def propose_adjustment(
    product_id: int,
    warehouse_id: int,
    quantity_change: int,
    adjustment_type: str,
    reason: str,
    *,
    notes: str | None = None,
    proposed_by_user_id: int | None = None,
    commit: bool = True,
) -> StockAdjustment:
    """
    Create a PENDING adjustment without touching stock.

    ADD needs a positive delta, REMOVE a negative one; CORRECTION may be either.

    Raises:
        InvalidAmountError: Zero delta or sign contradicting the type
        ValidationError: Unknown type/reason
        NotFoundError: Unknown product/warehouse/user
    """
    def _op() -> StockAdjustment:
        if adjustment_type not in ADJUSTMENT_TYPES:
            raise ValidationError(f"Unknown adjustment type {adjustment_type!r}")
        if reason not in ADJUSTMENT_REASONS:
            raise ValidationError(f"Unknown adjustment reason {reason!r}")
        if isinstance(quantity_change, bool) or not isinstance(quantity_change, int) or quantity_change == 0:
            raise InvalidAmountError("Adjustment quantity change must be a non-zero integer")
        if adjustment_type == ADJUSTMENT_TYPE_ADD and quantity_change < 0:
            raise InvalidAmountError("ADD adjustments require a positive quantity change")
        if adjustment_type == ADJUSTMENT_TYPE_REMOVE and quantity_change > 0:
            raise InvalidAmountError("REMOVE adjustments require a negative quantity change")

        stock_ledger.get_product(product_id)
        stock_ledger.get_warehouse(warehouse_id)
        resolve_user(proposed_by_user_id)

        quantity_before = stock_ledger.get_quantity(product_id, warehouse_id)

        adjustment = StockAdjustment(
            adjustment_number=next_document_number(document_type="ADJUSTMENT", prefix="ADJ"),
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity_change=quantity_change,
            adjustment_type=adjustment_type,
            reason=reason,
            notes=notes,
            status=ADJUSTMENT_STATUS_PENDING,
            quantity_before=quantity_before,
            quantity_after=quantity_before + quantity_change,
            proposed_by_user_id=proposed_by_user_id,
        )
        db.session.add(adjustment)
        db.session.flush()

        logger.info(
            "adjustment.proposed",
            adjustment_id=adjustment.id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity_change=quantity_change,
        )
        return adjustment

    return atomic(_op, commit=commit, operation="propose_adjustment")


def decide_adjustment(
    adjustment_id: int,
    approve: bool,
    approver_user_id: int | None = None,
    *,
    commit: bool = True,
) -> StockAdjustment:
    """
    PENDING -> APPROVED (approve=True) or REJECTED (approve=False).

    Raises:
        InvalidTransitionError: Adjustment already decided
    """
    def _op() -> StockAdjustment:
        adjustment = get_adjustment(adjustment_id)
        if adjustment.status != ADJUSTMENT_STATUS_PENDING:
            raise InvalidTransitionError(
                f"Adjustment {adjustment.adjustment_number} already {adjustment.status}",
                {"status": adjustment.status},
            )
        resolve_user(approver_user_id)

        adjustment.status = ADJUSTMENT_STATUS_APPROVED if approve else ADJUSTMENT_STATUS_REJECTED
        adjustment.approved_by_user_id = approver_user_id
        adjustment.decided_at = utcnow()
        db.session.flush()

        logger.info("adjustment.decided", adjustment_id=adjustment.id, status=adjustment.status)
        return adjustment

    return atomic(_op, commit=commit, operation="decide_adjustment")


def approve_adjustment(adjustment_id: int, approver_user_id: int | None = None) -> StockAdjustment:
    return decide_adjustment(adjustment_id, True, approver_user_id)


def reject_adjustment(adjustment_id: int, approver_user_id: int | None = None) -> StockAdjustment:
    return decide_adjustment(adjustment_id, False, approver_user_id)


def apply_adjustment(
    adjustment_id: int,
    *,
    performed_by_user_id: int | None = None,
    commit: bool = True,
) -> StockAdjustment:
    """
    Post an APPROVED adjustment to the stock ledger (once).

    The sign of quantity_change picks add_stock vs remove_stock; the movement
    is an ADJUSTMENT referencing the adjustment number.

    Raises:
        PendingApprovalError: Not decided yet
        InvalidTransitionError: Rejected
        AdjustmentAlreadyAppliedError: Applied before
        InsufficientStockError: Negative delta larger than current stock
    """
    def _op() -> StockAdjustment:
        adjustment = get_adjustment(adjustment_id)

        if adjustment.status == ADJUSTMENT_STATUS_PENDING:
            raise PendingApprovalError(
                f"Adjustment {adjustment.adjustment_number} is awaiting approval",
                {"adjustment_id": adjustment.id},
            )
        if adjustment.status != ADJUSTMENT_STATUS_APPROVED:
            raise InvalidTransitionError(
                f"Cannot apply adjustment in {adjustment.status} status",
                {"status": adjustment.status},
            )
        if adjustment.is_applied:
            raise AdjustmentAlreadyAppliedError(
                f"Adjustment {adjustment.adjustment_number} was already applied",
                {"adjustment_id": adjustment.id},
            )

        quantity_before = stock_ledger.get_quantity(adjustment.product_id, adjustment.warehouse_id)
        post = stock_ledger.add_stock if adjustment.quantity_change > 0 else stock_ledger.remove_stock
        quantity_after = post(
            adjustment.product_id,
            adjustment.warehouse_id,
            abs(adjustment.quantity_change),
            stock_ledger.MOVEMENT_TYPE_ADJUSTMENT,
            reason=adjustment.reason,
            reference_number=adjustment.adjustment_number,
            performed_by_user_id=performed_by_user_id,
            commit=False,
        )

        movement = stock_ledger.list_movements(reference_number=adjustment.adjustment_number, limit=1)[0]

        adjustment.quantity_before = quantity_before
        adjustment.quantity_after = quantity_after
        adjustment.applied_at = utcnow()
        adjustment.movement_id = movement.id
        db.session.flush()

        logger.info(
            "adjustment.applied",
            adjustment_id=adjustment.id,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
        )
        return adjustment

    return atomic(_op, commit=commit, operation="apply_adjustment")
