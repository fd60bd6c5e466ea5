# inventory_core/schemas/purchase_receipt.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from inventory_core.models.purchase_receipt import QualityStatus, ReceiptStatus

NOTES_MAX = 1000


class ReceiptItemIn(BaseModel):
    product_id: int
    ordered_quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)

    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)

    order_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)


class ReceiptItemUpdate(BaseModel):
    ordered_quantity: Optional[Decimal] = Field(default=None, gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    tax_amount: Optional[Decimal] = Field(default=None, ge=0)
    order_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)


class ReceiptCreate(BaseModel):
    supplier_id: int
    receipt_number: Optional[str] = Field(default=None, max_length=50)

    order_date: Optional[date] = None
    expected_date: Optional[date] = None
    reference: Optional[str] = Field(default=None, max_length=100)
    terms: Optional[str] = Field(default=None, max_length=NOTES_MAX)
    order_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    currency: Optional[str] = Field(default=None, max_length=8)

    items: List[ReceiptItemIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_discount_kind(self):
        if self.discount_percent > 0 and self.discount_amount > 0:
            raise ValueError(
                "Give the header discount as a percentage or an amount, not both")
        return self


class ReceiptUpdate(BaseModel):
    supplier_id: Optional[int] = None
    order_date: Optional[date] = None
    expected_date: Optional[date] = None
    reference: Optional[str] = Field(default=None, max_length=100)
    terms: Optional[str] = Field(default=None, max_length=NOTES_MAX)
    order_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    shipping_cost: Optional[Decimal] = Field(default=None, ge=0)


class DeliveryIn(BaseModel):
    received_date: Optional[date] = None
    delivery_date: Optional[date] = None
    delivery_note: Optional[str] = Field(default=None, max_length=100)
    invoice_number: Optional[str] = Field(default=None, max_length=100)
    invoice_date: Optional[date] = None
    vehicle_number: Optional[str] = Field(default=None, max_length=50)
    driver_name: Optional[str] = Field(default=None, max_length=100)
    receipt_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)


class ReceiveLineIn(BaseModel):
    """
    Disposition of one receipt line. Quantities are the line's totals,
    not increments.
    """
    item_id: int

    received_quantity: Decimal = Field(ge=0)
    accepted_quantity: Decimal = Field(default=Decimal("0"), ge=0)
    rejected_quantity: Decimal = Field(default=Decimal("0"), ge=0)
    damaged_quantity: Decimal = Field(default=Decimal("0"), ge=0)

    batch_number: Optional[str] = Field(default=None, max_length=100)
    lot_number: Optional[str] = Field(default=None, max_length=100)
    manufacture_date: Optional[date] = None
    expiry_date: Optional[date] = None

    quality_status: Optional[QualityStatus] = None
    quality_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)
    receipt_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    @model_validator(mode="after")
    def _disposition_within_received(self):
        disposed = (self.accepted_quantity + self.rejected_quantity +
                    self.damaged_quantity)
        if disposed > self.received_quantity:
            raise ValueError(
                "accepted + rejected + damaged cannot exceed received quantity")
        return self


class ReceiveGoodsIn(DeliveryIn):
    lines: List[ReceiveLineIn] = Field(default_factory=list)
    quality_notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)


class ReceiptCancelIn(BaseModel):
    reason: str = Field(default="", max_length=255)


class ReceiptItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int

    ordered_quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_price: Decimal
    order_notes: Optional[str] = None

    received_quantity: Decimal
    accepted_quantity: Decimal
    rejected_quantity: Decimal
    damaged_quantity: Decimal

    batch_number: Optional[str] = None
    lot_number: Optional[str] = None
    expiry_date: Optional[date] = None
    quality_status: QualityStatus
    batch_id: Optional[int] = None
    stock_updated: bool
    stock_updated_at: Optional[datetime] = None
    stock_reversed_at: Optional[datetime] = None


class ReceiptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    receipt_number: str
    supplier_id: int
    status: ReceiptStatus

    order_date: Optional[date] = None
    expected_date: Optional[date] = None
    reference: Optional[str] = None
    received_date: Optional[date] = None
    invoice_number: Optional[str] = None
    delivery_note: Optional[str] = None
    quality_check: bool

    sub_total: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    currency: str

    created_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    received_by: Optional[int] = None
    verified_by: Optional[int] = None
    verified_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    items: List[ReceiptItemOut] = Field(default_factory=list)
