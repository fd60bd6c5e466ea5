# inventory_core/db/immutability.py
"""
ORM-level guards for historical stock data.

StockMovement rows are append-only: any UPDATE or DELETE issued through the
ORM is blocked before SQL reaches the database. StockBatch.cost_price is
frozen once the batch exists, since every movement of the batch was costed
with it.

Bulk ``update()`` / ``delete()`` statements bypass mapper events; the
services never issue them against stock_movements.
"""
from __future__ import annotations

import logging

from sqlalchemy import event, inspect

from inventory_core.core.exceptions import InvalidRequest, LedgerImmutableError
from inventory_core.models.stock import StockBatch, StockMovement

logger = logging.getLogger(__name__)


def _block_movement_update(mapper, connection, target):
    logger.warning("Blocked UPDATE of stock movement id=%s", target.id)
    raise LedgerImmutableError(
        f"Stock movement {target.id} is immutable; record a compensating movement instead"
    )


def _block_movement_delete(mapper, connection, target):
    logger.warning("Blocked DELETE of stock movement id=%s", target.id)
    raise LedgerImmutableError(
        f"Stock movement {target.id} cannot be deleted")


def _freeze_batch_cost(mapper, connection, target):
    hist = inspect(target).attrs.cost_price.history
    if not hist.has_changes() or not hist.deleted:
        return
    old, new = hist.deleted[0], hist.added[0] if hist.added else None
    if old is not None and new is not None and old != new:
        raise InvalidRequest(
            f"cost_price of batch {target.id} is fixed at creation ({old})")


event.listen(StockMovement, "before_update", _block_movement_update)
event.listen(StockMovement, "before_delete", _block_movement_delete)
event.listen(StockBatch, "before_update", _freeze_batch_cost)
