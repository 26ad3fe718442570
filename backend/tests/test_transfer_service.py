"""
Transfer tests: conservation of units, one movement per transfer, compensation.
"""

import pytest

from ims.errors import InsufficientStockError, InvalidTransferError, ValidationError
from ims.extensions import db
from ims.services import catalog_service, transfer_service
from ims.services import stock_ledger_service as ledger


class TestTransfer:

    def test_transfer_moves_stock_and_conserves_total(self, db_session, stocked_product, warehouse, second_warehouse):
        result = transfer_service.transfer(stocked_product.id, warehouse.id, second_warehouse.id, 30, reason="Rebalance")

        assert result["from_new_quantity"] == 70
        assert result["to_new_quantity"] == 30
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 70
        assert ledger.get_quantity(stocked_product.id, second_warehouse.id) == 30
        assert ledger.get_total_quantity(stocked_product.id) == 100

    def test_transfer_writes_single_linked_movement(self, db_session, stocked_product, warehouse, second_warehouse):
        result = transfer_service.transfer(stocked_product.id, warehouse.id, second_warehouse.id, 10)

        transfers = ledger.list_movements(movement_type=ledger.MOVEMENT_TYPE_TRANSFER)
        assert len(transfers) == 1
        movement = transfers[0]
        assert movement.id == result["movement_id"]
        assert movement.from_warehouse_id == warehouse.id
        assert movement.to_warehouse_id == second_warehouse.id
        assert movement.quantity == 10

    def test_transfer_entire_balance(self, db_session, stocked_product, warehouse, second_warehouse):
        result = transfer_service.transfer(stocked_product.id, warehouse.id, second_warehouse.id, 100)
        assert result["from_new_quantity"] == 0
        assert result["to_new_quantity"] == 100

    def test_same_warehouse_rejected(self, db_session, stocked_product, warehouse):
        with pytest.raises(InvalidTransferError):
            transfer_service.transfer(stocked_product.id, warehouse.id, warehouse.id, 1)

    @pytest.mark.parametrize("quantity", [0, -5])
    def test_non_positive_quantity_rejected(self, db_session, stocked_product, warehouse, second_warehouse, quantity):
        with pytest.raises(InvalidTransferError):
            transfer_service.transfer(stocked_product.id, warehouse.id, second_warehouse.id, quantity)

    def test_insufficient_source_changes_nothing(self, db_session, stocked_product, warehouse, second_warehouse):
        with pytest.raises(InsufficientStockError):
            transfer_service.transfer(stocked_product.id, warehouse.id, second_warehouse.id, 101)

        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100
        assert ledger.get_stock_record(stocked_product.id, second_warehouse.id) is None
        assert ledger.list_movements(movement_type=ledger.MOVEMENT_TYPE_TRANSFER) == []

    def test_inactive_destination_rejected(self, db_session, stocked_product, warehouse, second_warehouse):
        catalog_service.set_warehouse_active(second_warehouse.id, False)

        with pytest.raises(ValidationError):
            transfer_service.transfer(stocked_product.id, warehouse.id, second_warehouse.id, 5)

        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100


class TestTransferCompensation:
    """A failing destination step re-credits the source inside the caller's transaction."""

    def test_source_restored_when_destination_fails(
        self, db_session, monkeypatch, stocked_product, warehouse, second_warehouse
    ):
        original_add_stock = ledger.add_stock

        def failing_add_stock(product_id, warehouse_id, *args, **kwargs):
            if warehouse_id == second_warehouse.id:
                raise ValidationError("Destination unavailable")
            return original_add_stock(product_id, warehouse_id, *args, **kwargs)

        monkeypatch.setattr(transfer_service.stock_ledger, "add_stock", failing_add_stock)

        with pytest.raises(ValidationError):
            transfer_service.transfer(
                stocked_product.id, warehouse.id, second_warehouse.id, 25, commit=False
            )

        # No rollback happened (commit=False); compensation alone rebalanced the source
        assert ledger.get_quantity(stocked_product.id, warehouse.id) == 100
        assert ledger.get_quantity(stocked_product.id, second_warehouse.id) == 0
        assert ledger.list_movements(movement_type=ledger.MOVEMENT_TYPE_TRANSFER) == []
        db.session.rollback()
