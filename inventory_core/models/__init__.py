# inventory_core/models/__init__.py
from .number_series import NumberSeries
from .stock import (
    IssuePolicy,
    MovementType,
    StockBatch,
    StockDirection,
    StockMovement,
)
from .purchase_receipt import (
    PurchaseReceipt,
    PurchaseReceiptItem,
    QualityStatus,
    ReceiptStatus,
)
from inventory_core.db import immutability  # noqa: E402,F401

__all__ = [
    "NumberSeries",
    "IssuePolicy",
    "MovementType",
    "StockBatch",
    "StockDirection",
    "StockMovement",
    "PurchaseReceipt",
    "PurchaseReceiptItem",
    "QualityStatus",
    "ReceiptStatus",
]
