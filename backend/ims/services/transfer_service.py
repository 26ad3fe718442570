# backend/ims/services/transfer_service.py
"""
Warehouse-to-warehouse stock transfer.

WHY: Moving stock must never create or destroy units. A transfer removes
from the source, adds to the destination and writes ONE TRANSFER movement
linking both warehouses.

ALL-OR-NOTHING:
If the destination step fails after the source was debited, the source is
re-credited (compensating action) before the destination failure is raised.
With commit=True the unit of work also rolls back; with commit=False the
compensation alone keeps the caller's transaction balanced.
"""
from __future__ import annotations

import structlog

from ..errors import ConcurrentModificationError, IMSError, InvalidTransferError
from . import stock_ledger_service as stock_ledger
from .concurrency import atomic
from .identity_service import resolve_user

logger = structlog.get_logger(__name__)


def transfer(
    product_id: int,
    from_warehouse_id: int,
    to_warehouse_id: int,
    quantity: int,
    *,
    performed_by_user_id: int | None = None,
    reason: str | None = None,
    reference_number: str | None = None,
    commit: bool = True,
) -> dict:
    """
    Move quantity of a product between two warehouses.

    Args:
        product_id: Product to move
        from_warehouse_id: Source warehouse
        to_warehouse_id: Destination warehouse (must differ, must be active)
        quantity: Units to move (>= 1)

    Returns:
        dict: {"from_new_quantity", "to_new_quantity", "movement_id"}

    Raises:
        InvalidTransferError: Same warehouse or non-positive quantity
        InsufficientStockError: Source has less than quantity
        ConcurrentModificationError: Either record changed under us
    """
    def _op() -> dict:
        if from_warehouse_id == to_warehouse_id:
            raise InvalidTransferError(
                "Source and destination warehouse must differ",
                {"warehouse_id": from_warehouse_id},
            )
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidTransferError(
                f"Transfer quantity must be at least 1, got {quantity!r}",
                {"quantity": quantity},
            )

        stock_ledger.get_product(product_id)
        stock_ledger.get_warehouse(from_warehouse_id)
        stock_ledger.get_warehouse(to_warehouse_id, require_active=True)
        resolve_user(performed_by_user_id)

        from_new_quantity = stock_ledger.remove_stock(
            product_id,
            from_warehouse_id,
            quantity,
            stock_ledger.MOVEMENT_TYPE_TRANSFER,
            performed_by_user_id=performed_by_user_id,
            record_movement_entry=False,
            commit=False,
        )

        try:
            to_new_quantity = stock_ledger.add_stock(
                product_id,
                to_warehouse_id,
                quantity,
                stock_ledger.MOVEMENT_TYPE_TRANSFER,
                performed_by_user_id=performed_by_user_id,
                record_movement_entry=False,
                commit=False,
            )
        except ConcurrentModificationError:
            # Session already rolled back; nothing left to compensate
            raise
        except IMSError as exc:
            logger.warning(
                "transfer.compensating",
                product_id=product_id,
                from_warehouse_id=from_warehouse_id,
                to_warehouse_id=to_warehouse_id,
                quantity=quantity,
                code=exc.code,
            )
            stock_ledger.add_stock(
                product_id,
                from_warehouse_id,
                quantity,
                stock_ledger.MOVEMENT_TYPE_ADJUSTMENT,
                record_movement_entry=False,
                commit=False,
            )
            raise

        movement = stock_ledger.record_movement(
            product_id=product_id,
            movement_type=stock_ledger.MOVEMENT_TYPE_TRANSFER,
            quantity=quantity,
            from_warehouse_id=from_warehouse_id,
            to_warehouse_id=to_warehouse_id,
            reason=reason,
            reference_number=reference_number,
            performed_by_user_id=performed_by_user_id,
        )

        logger.info(
            "transfer.completed",
            product_id=product_id,
            from_warehouse_id=from_warehouse_id,
            to_warehouse_id=to_warehouse_id,
            quantity=quantity,
            movement_id=movement.id,
        )

        return {
            "from_new_quantity": from_new_quantity,
            "to_new_quantity": to_new_quantity,
            "movement_id": movement.id,
        }

    return atomic(_op, commit=commit, operation="transfer")
