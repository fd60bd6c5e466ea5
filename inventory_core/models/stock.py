# inventory_core/models/stock.py
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
from inventory_core.utils.timezone import now_local, today_local

Qty = Numeric(14, 4)
Cost = Numeric(14, 4)
Money = Numeric(14, 2)
ExtCost = Numeric(18, 4)


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, default=now_local)
    updated_at = Column(DateTime,
                        nullable=False,
                        default=now_local,
                        onupdate=now_local)


class MovementType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"
    SALE = "SALE"
    RETURN = "RETURN"
    DAMAGE = "DAMAGE"


class StockDirection(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"


INCOMING_TYPES = frozenset({MovementType.IN, MovementType.RETURN})
OUTGOING_TYPES = frozenset(
    {MovementType.OUT, MovementType.SALE, MovementType.DAMAGE})


class IssuePolicy(str, enum.Enum):
    FIFO = "FIFO"  # oldest received first
    LIFO = "LIFO"  # newest received first
    FEFO = "FEFO"  # earliest expiry first


class StockBatch(Base, TimestampMixin):
    """
    A physically distinguishable lot of one product.
    quantity = everything ever received into the lot (less explicit adjustments),
    available_quantity = the part not yet allocated.
    """
    __tablename__ = "stock_batches"

    id = Column(Integer, primary_key=True)

    product_id = Column(Integer, nullable=False, index=True)
    supplier_id = Column(Integer, nullable=True, index=True)

    batch_number = Column(String(100), nullable=True, index=True)
    lot_number = Column(String(100), nullable=True, index=True)

    quantity = Column(Qty, nullable=False, default=Decimal("0"))
    available_quantity = Column(Qty, nullable=False, default=Decimal("0"))

    # set once at creation
    cost_price = Column(Cost, nullable=False, default=Decimal("0"))

    manufacture_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=True, index=True)
    received_date = Column(Date, nullable=False, default=today_local, index=True)

    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)

    movements = relationship("StockMovement", back_populates="batch")

    __table_args__ = (
        Index("ix_batch_product_active", "product_id", "is_active"),
        Index("ix_batch_product_received", "product_id", "received_date"),
        CheckConstraint("quantity >= 0", name="ck_batch_qty_nonneg"),
        CheckConstraint(
            "available_quantity >= 0 AND available_quantity <= quantity",
            name="ck_batch_available_range"),
        CheckConstraint("cost_price >= 0", name="ck_batch_cost_nonneg"),
    )

    def is_expired(self, on_date) -> bool:
        return self.expiry_date is not None and self.expiry_date < on_date

    def __repr__(self) -> str:
        return (f"<StockBatch id={self.id} product={self.product_id} "
                f"batch={self.batch_number!r} avail={self.available_quantity}/{self.quantity}>")


class StockMovement(Base):
    """
    Immutable movement log (source of truth for audit and costing).
    NEVER update or delete; corrections are new rows.
    """
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True)

    product_id = Column(Integer, nullable=False, index=True)
    batch_id = Column(Integer,
                      ForeignKey("stock_batches.id"),
                      nullable=True,
                      index=True)
    batch = relationship("StockBatch", back_populates="movements")

    movement_type = Column(Enum(MovementType, native_enum=False, length=20),
                           nullable=False,
                           index=True)
    direction = Column(Enum(StockDirection, native_enum=False, length=3),
                       nullable=False)

    # positive magnitude; direction carries the sign
    quantity = Column(Qty, nullable=False)
    unit_cost = Column(Cost, nullable=False, default=Decimal("0"))
    total_cost = Column(ExtCost, nullable=False, default=Decimal("0"))

    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Integer, nullable=True)
    user_id = Column(Integer, nullable=True, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=now_local, index=True)

    __table_args__ = (
        Index("ix_movement_product_dt", "product_id", "created_at"),
        Index("ix_movement_reference", "reference_type", "reference_id"),
        CheckConstraint("quantity > 0", name="ck_movement_qty_positive"),
    )

    @property
    def signed_quantity(self) -> Decimal:
        q = Decimal(self.quantity or 0)
        return q if self.direction == StockDirection.IN else -q
