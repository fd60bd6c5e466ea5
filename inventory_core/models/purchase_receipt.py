# inventory_core/models/purchase_receipt.py
from __future__ import annotations

from decimal import Decimal
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import relationship

from inventory_core.db.base import Base
from inventory_core.utils.timezone import now_local

Qty = Numeric(14, 4)
Cost = Numeric(14, 4)
Money = Numeric(14, 2)
Pct = Numeric(5, 2)


class ReceiptStatus(str, enum.Enum):
    # order phase
    draft = "draft"
    pending = "pending"
    approved = "approved"
    ordered = "ordered"
    # receipt phase
    received = "received"
    partial = "partial"
    completed = "completed"
    # terminal
    cancelled = "cancelled"


ORDER_PHASE = frozenset({
    ReceiptStatus.draft,
    ReceiptStatus.pending,
    ReceiptStatus.approved,
    ReceiptStatus.ordered,
})
RECEIPT_PHASE = frozenset({
    ReceiptStatus.received,
    ReceiptStatus.partial,
    ReceiptStatus.completed,
})


class QualityStatus(str, enum.Enum):
    pending = "pending"
    good = "good"
    damaged = "damaged"
    rejected = "rejected"


class PurchaseReceipt(Base):
    """Purchase order and goods receipt in one document."""
    __tablename__ = "purchase_receipts"

    id = Column(Integer, primary_key=True)
    receipt_number = Column(String(50), nullable=False, unique=True)
    supplier_id = Column(Integer, nullable=False, index=True)

    status = Column(Enum(ReceiptStatus, native_enum=False, length=20),
                    nullable=False,
                    default=ReceiptStatus.draft,
                    index=True)

    # Order phase
    order_date = Column(Date, nullable=True, index=True)
    expected_date = Column(Date, nullable=True)
    reference = Column(String(100), nullable=True)
    terms = Column(Text, nullable=True)
    order_notes = Column(Text, nullable=True)

    # Receipt phase
    received_date = Column(Date, nullable=True)
    delivery_date = Column(Date, nullable=True)
    delivery_note = Column(String(100), nullable=True)
    invoice_number = Column(String(100), nullable=True, index=True)
    invoice_date = Column(Date, nullable=True)
    vehicle_number = Column(String(50), nullable=True)
    driver_name = Column(String(100), nullable=True)
    quality_check = Column(Boolean, nullable=False, default=False)
    quality_notes = Column(Text, nullable=True)
    receipt_notes = Column(Text, nullable=True)

    # Financials
    sub_total = Column(Money, nullable=False, default=Decimal("0"))
    discount_percent = Column(Pct, nullable=False, default=Decimal("0"))
    discount_amount = Column(Money, nullable=False, default=Decimal("0"))
    tax_rate = Column(Pct, nullable=False, default=Decimal("0"))
    tax_amount = Column(Money, nullable=False, default=Decimal("0"))
    shipping_cost = Column(Money, nullable=False, default=Decimal("0"))
    total_amount = Column(Money, nullable=False, default=Decimal("0"))
    currency = Column(String(8), nullable=False, default="MYR")

    # Audit actors
    created_by = Column(Integer, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    sent_by = Column(Integer, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    received_by = Column(Integer, nullable=True)
    verified_by = Column(Integer, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=now_local)
    updated_at = Column(DateTime,
                        nullable=False,
                        default=now_local,
                        onupdate=now_local)

    items = relationship(
        "PurchaseReceiptItem",
        back_populates="receipt",
        cascade="all, delete-orphan",
        order_by="PurchaseReceiptItem.id",
    )

    __table_args__ = (
        Index("ix_receipt_supplier_status", "supplier_id", "status"),
        CheckConstraint("total_amount >= 0", name="ck_receipt_total_nonneg"),
    )

    @property
    def is_order_phase(self) -> bool:
        return self.status in ORDER_PHASE

    @property
    def is_receipt_phase(self) -> bool:
        return self.status in RECEIPT_PHASE


class PurchaseReceiptItem(Base):
    __tablename__ = "purchase_receipt_items"

    id = Column(Integer, primary_key=True)
    receipt_id = Column(Integer,
                        ForeignKey("purchase_receipts.id", ondelete="CASCADE"),
                        nullable=False,
                        index=True)
    receipt = relationship("PurchaseReceipt", back_populates="items")

    product_id = Column(Integer, nullable=False, index=True)

    # Order side
    ordered_quantity = Column(Qty, nullable=False, default=Decimal("0"))
    unit_price = Column(Cost, nullable=False, default=Decimal("0"))
    discount_percent = Column(Pct, nullable=False, default=Decimal("0"))
    discount_amount = Column(Money, nullable=False, default=Decimal("0"))
    tax_amount = Column(Money, nullable=False, default=Decimal("0"))
    total_price = Column(Money, nullable=False, default=Decimal("0"))
    order_notes = Column(Text, nullable=True)

    # Receipt side
    received_quantity = Column(Qty, nullable=False, default=Decimal("0"))
    accepted_quantity = Column(Qty, nullable=False, default=Decimal("0"))
    rejected_quantity = Column(Qty, nullable=False, default=Decimal("0"))
    damaged_quantity = Column(Qty, nullable=False, default=Decimal("0"))

    batch_number = Column(String(100), nullable=True)
    lot_number = Column(String(100), nullable=True)
    manufacture_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=True)
    quality_status = Column(Enum(QualityStatus, native_enum=False,
                                 length=20),
                            nullable=False,
                            default=QualityStatus.pending)
    quality_notes = Column(Text, nullable=True)
    receipt_notes = Column(Text, nullable=True)

    batch_id = Column(Integer,
                      ForeignKey("stock_batches.id"),
                      nullable=True,
                      index=True)
    batch = relationship("StockBatch")

    # flips False -> True exactly once
    stock_updated = Column(Boolean, nullable=False, default=False)
    stock_updated_at = Column(DateTime, nullable=True)
    stock_reversed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("ordered_quantity > 0",
                        name="ck_receipt_item_ordered_pos"),
        CheckConstraint("received_quantity <= ordered_quantity",
                        name="ck_receipt_item_received_le_ordered"),
        CheckConstraint(
            "accepted_quantity + rejected_quantity + damaged_quantity <= received_quantity",
            name="ck_receipt_item_disposition"),
    )

    @property
    def is_fully_received(self) -> bool:
        return Decimal(self.received_quantity or 0) >= Decimal(
            self.ordered_quantity or 0)

    @property
    def is_settled(self) -> bool:
        """Stock applied, or the line was received with nothing to accept."""
        if self.stock_updated:
            return True
        return (Decimal(self.received_quantity or 0) > 0
                and Decimal(self.accepted_quantity or 0) <= 0)
