"""
Stock adjustment workflow tests (propose -> approve/reject -> apply once).
"""

import pytest

from ims.errors import (
    AdjustmentAlreadyAppliedError,
    InsufficientStockError,
    InvalidAmountError,
    InvalidTransitionError,
    PendingApprovalError,
    ValidationError,
)
from ims.services import adjustment_service
from ims.services import stock_ledger_service as ledger


def _propose(product, warehouse, change, adjustment_type, reason="COUNT_ERROR"):
    return adjustment_service.propose_adjustment(
        product.id, warehouse.id, change, adjustment_type, reason, proposed_by_user_id=1
    )


class TestProposeAdjustment:

    def test_propose_leaves_stock_untouched(self, db_session, stocked_product, warehouse):
        adjustment = _propose(stocked_product, warehouse, 5, adjustment_service.ADJUSTMENT_TYPE_ADD)

        assert adjustment.status == adjustment_service.ADJUSTMENT_STATUS_PENDING
        assert adjustment.adjustment_number.startswith("ADJ-")
        assert adjustment.quantity_before == 100
        assert adjustment.quantity_after == 105
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100

    def test_zero_change_rejected(self, db_session, stocked_product, warehouse):
        with pytest.raises(InvalidAmountError):
            _propose(stocked_product, warehouse, 0, adjustment_service.ADJUSTMENT_TYPE_CORRECTION)

    def test_sign_must_match_type(self, db_session, stocked_product, warehouse):
        with pytest.raises(InvalidAmountError):
            _propose(stocked_product, warehouse, -3, adjustment_service.ADJUSTMENT_TYPE_ADD)
        with pytest.raises(InvalidAmountError):
            _propose(stocked_product, warehouse, 3, adjustment_service.ADJUSTMENT_TYPE_REMOVE)

    def test_unknown_reason_rejected(self, db_session, stocked_product, warehouse):
        with pytest.raises(ValidationError):
            _propose(stocked_product, warehouse, 1, adjustment_service.ADJUSTMENT_TYPE_ADD, reason="MAGIC")


class TestApplyAdjustment:

    def test_approved_adjustment_applies_once(self, db_session, stocked_product, warehouse):
        adjustment = _propose(stocked_product, warehouse, -8, adjustment_service.ADJUSTMENT_TYPE_REMOVE, "DAMAGED")
        adjustment_service.approve_adjustment(adjustment.id, approver_user_id=2)

        applied = adjustment_service.apply_adjustment(adjustment.id, performed_by_user_id=2)

        assert applied.is_applied
        assert applied.quantity_before == 100
        assert applied.quantity_after == 92
        assert applied.approved_by_user_id == 2
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 92

        movement = ledger.list_movements(reference_number=applied.adjustment_number)[0]
        assert applied.movement_id == movement.id
        assert movement.movement_type == ledger.MOVEMENT_TYPE_ADJUSTMENT
        assert movement.from_warehouse_id == warehouse.id

        with pytest.raises(AdjustmentAlreadyAppliedError):
            adjustment_service.apply_adjustment(adjustment.id)
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 92

    def test_pending_adjustment_cannot_apply(self, db_session, stocked_product, warehouse):
        adjustment = _propose(stocked_product, warehouse, 5, adjustment_service.ADJUSTMENT_TYPE_ADD)

        with pytest.raises(PendingApprovalError):
            adjustment_service.apply_adjustment(adjustment.id)
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100

    def test_rejected_adjustment_cannot_apply(self, db_session, stocked_product, warehouse):
        adjustment = _propose(stocked_product, warehouse, 5, adjustment_service.ADJUSTMENT_TYPE_ADD)
        adjustment_service.reject_adjustment(adjustment.id, approver_user_id=2)

        with pytest.raises(InvalidTransitionError) as exc_info:
            adjustment_service.apply_adjustment(adjustment.id)
        assert not isinstance(exc_info.value, AdjustmentAlreadyAppliedError)

    def test_decision_is_final(self, db_session, stocked_product, warehouse):
        adjustment = _propose(stocked_product, warehouse, 5, adjustment_service.ADJUSTMENT_TYPE_ADD)
        adjustment_service.approve_adjustment(adjustment.id)

        with pytest.raises(InvalidTransitionError):
            adjustment_service.reject_adjustment(adjustment.id)

    def test_removal_beyond_stock_leaves_adjustment_unapplied(self, db_session, stocked_product, warehouse):
        adjustment = _propose(stocked_product, warehouse, -150, adjustment_service.ADJUSTMENT_TYPE_CORRECTION)
        adjustment_service.approve_adjustment(adjustment.id)

        with pytest.raises(InsufficientStockError):
            adjustment_service.apply_adjustment(adjustment.id)

        assert adjustment_service.get_adjustment(adjustment.id).applied_at is None
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100

    def test_list_adjustments_by_status(self, db_session, stocked_product, warehouse):
        first = _propose(stocked_product, warehouse, 1, adjustment_service.ADJUSTMENT_TYPE_ADD)
        _propose(stocked_product, warehouse, 2, adjustment_service.ADJUSTMENT_TYPE_ADD)
        adjustment_service.approve_adjustment(first.id)

        pending = adjustment_service.list_adjustments(status=adjustment_service.ADJUSTMENT_STATUS_PENDING)
        assert [a.quantity_change for a in pending] == [2]
