# inventory_core/schemas/stock.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from inventory_core.models.stock import IssuePolicy, MovementType, StockDirection


class BatchCreate(BaseModel):
    product_id: int
    quantity: Decimal = Field(gt=0)
    cost_price: Decimal = Field(default=Decimal("0"), ge=0)

    batch_number: Optional[str] = Field(default=None, max_length=100)
    lot_number: Optional[str] = Field(default=None, max_length=100)
    supplier_id: Optional[int] = None

    manufacture_date: Optional[date] = None
    expiry_date: Optional[date] = None
    received_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class BatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    supplier_id: Optional[int] = None
    batch_number: Optional[str] = None
    lot_number: Optional[str] = None

    quantity: Decimal
    available_quantity: Decimal
    cost_price: Decimal

    manufacture_date: Optional[date] = None
    expiry_date: Optional[date] = None
    received_date: date
    is_active: bool
    notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime


class MovementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    batch_id: Optional[int] = None
    movement_type: MovementType
    direction: StockDirection
    quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal

    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    user_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime


class AllocationRequest(BaseModel):
    product_id: int
    quantity: Decimal
    policy: Optional[IssuePolicy] = None


class AllocationLine(BaseModel):
    """One batch's share of an allocation."""
    batch_id: int
    quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    received_date: Optional[date] = None


class AllocationResult(BaseModel):
    product_id: int
    policy: IssuePolicy
    lines: List[AllocationLine] = Field(default_factory=list)
    total_quantity: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    movement_ids: List[int] = Field(default_factory=list)

    @property
    def average_unit_cost(self) -> Decimal:
        if self.total_quantity <= 0:
            return Decimal("0")
        return self.total_cost / self.total_quantity
