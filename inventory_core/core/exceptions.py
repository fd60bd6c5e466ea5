# inventory_core/core/exceptions.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


class InventoryError(RuntimeError):
    """Base class for every recoverable inventory failure."""
    pass


class InvalidRequest(InventoryError):
    pass


class InvalidQuantity(InvalidRequest):
    pass


class InsufficientStock(InventoryError):

    def __init__(
        self,
        message: str,
        *,
        product_id: Optional[int] = None,
        requested: Optional[Decimal] = None,
        available: Optional[Decimal] = None,
        line_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.line_index = line_index


class InvalidStateTransition(InventoryError):

    def __init__(self, current: Any, action: str, message: str = ""):
        current_value = getattr(current, "value", current)
        super().__init__(
            message or f"Cannot {action} a receipt in status '{current_value}'")
        self.current = current_value
        self.action = action


class DuplicateReceiptNumber(InventoryError):
    pass


class NotFound(InventoryError):

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class ConcurrentUpdate(InventoryError):
    pass


class LedgerImmutableError(InventoryError):
    pass
