# inventory_core/schemas/inventory.py
from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class StockLevelOut(BaseModel):
    product_id: int
    on_hand: Decimal = Decimal("0")
    available: Decimal = Decimal("0")
    allocated: Decimal = Decimal("0")
    batch_count: int = 0
    weighted_average_cost: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")
    reorder_level: Optional[Decimal] = None
    is_low_stock: bool = False


class BatchUtilizationOut(BaseModel):
    batch_id: int
    product_id: int
    batch_number: Optional[str] = None
    quantity: Decimal
    available_quantity: Decimal
    consumed_quantity: Decimal
    utilization_percent: Decimal


class ProductBatchSummaryOut(BaseModel):
    product_id: int
    total_batches: int = 0
    active_batches: int = 0
    expired_batches: int = 0
    total_quantity: Decimal = Decimal("0")
    available_quantity: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")
    weighted_average_cost: Decimal = Decimal("0")
    oldest_received: Optional[date] = None
    nearest_expiry: Optional[date] = None


class ValuationRowOut(BaseModel):
    product_id: int
    available_quantity: Decimal
    total_value: Decimal
    weighted_average_cost: Decimal


class InventoryValuationOut(BaseModel):
    rows: List[ValuationRowOut] = Field(default_factory=list)
    total_quantity: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")


class ReceiptSummaryOut(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    total_receipts: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    total_value: Decimal = Decimal("0")
    completed_value: Decimal = Decimal("0")
    pending_count: int = 0


class SupplierPerformanceOut(BaseModel):
    supplier_id: int
    total_receipts: int = 0
    completed_receipts: int = 0
    cancelled_receipts: int = 0
    total_order_value: Decimal = Decimal("0")
    average_order_value: Decimal = Decimal("0")

    total_ordered: Decimal = Decimal("0")
    total_received: Decimal = Decimal("0")
    total_accepted: Decimal = Decimal("0")
    total_rejected: Decimal = Decimal("0")
    total_damaged: Decimal = Decimal("0")
    acceptance_rate: Decimal = Decimal("0")
    delivery_rate: Decimal = Decimal("0")

    on_time_deliveries: int = 0
    late_deliveries: int = 0


class TopSupplierOut(BaseModel):
    supplier_id: int
    receipt_count: int
    total_value: Decimal


class AlertKind(str, Enum):
    EXPIRING = "EXPIRING"
    EXPIRED = "EXPIRED"
    LOW_STOCK = "LOW_STOCK"


class StockAlertOut(BaseModel):
    kind: AlertKind
    product_id: int
    batch_id: Optional[int] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    days_to_expiry: Optional[int] = None
    quantity: Decimal = Decimal("0")
    reorder_level: Optional[Decimal] = None
    message: str = ""


class StockAlertScanOut(BaseModel):
    as_of: date
    expiring: List[StockAlertOut] = Field(default_factory=list)
    expired: List[StockAlertOut] = Field(default_factory=list)
    low_stock: List[StockAlertOut] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.expiring) + len(self.expired) + len(self.low_stock)
