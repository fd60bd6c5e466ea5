# inventory_core/services/batch_store.py
from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple, Union

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from inventory_core.core.exceptions import (
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    NotFound,
)
from inventory_core.models.purchase_receipt import PurchaseReceiptItem
from inventory_core.models.stock import (
    MovementType,
    StockBatch,
    StockDirection,
    StockMovement,
)
from inventory_core.schemas.stock import BatchCreate
from inventory_core.services.stock_ledger import record_movement
from inventory_core.utils.decimals import D, cost4, qty4
from inventory_core.utils.timezone import now_local, today_local

logger = logging.getLogger(__name__)

REF_BATCH_ADJUSTMENT = "stock_batch_adjustment"


def _clean(s: Optional[str]) -> Optional[str]:
    s = (s or "").strip()
    return s or None


# ============================================================
# Create / fetch
# ============================================================
def create_batch(
    db: Session,
    *,
    product_id: int,
    quantity,
    cost_price,
    batch_number: Optional[str] = None,
    lot_number: Optional[str] = None,
    supplier_id: Optional[int] = None,
    manufacture_date: Optional[date] = None,
    expiry_date: Optional[date] = None,
    received_date: Optional[date] = None,
    notes: Optional[str] = None,
) -> StockBatch:
    q = qty4(quantity)
    if q <= 0:
        raise InvalidQuantity("Batch quantity must be greater than zero")

    cost = cost4(cost_price)
    if cost < 0:
        raise InvalidQuantity("Cost price cannot be negative")

    if manufacture_date and expiry_date and expiry_date < manufacture_date:
        raise InvalidRequest("Expiry date cannot be before manufacture date")

    batch = StockBatch(
        product_id=product_id,
        supplier_id=supplier_id,
        batch_number=_clean(batch_number),
        lot_number=_clean(lot_number),
        quantity=q,
        available_quantity=q,
        cost_price=cost,
        manufacture_date=manufacture_date,
        expiry_date=expiry_date,
        received_date=received_date or today_local(),
        is_active=True,
        notes=notes,
    )
    db.add(batch)
    db.flush()

    logger.info("Created batch id=%s product=%s qty=%s cost=%s", batch.id,
                product_id, q, cost)
    return batch


def create_batches_bulk(db: Session,
                        rows: Iterable[Union[BatchCreate, dict]]) -> List[StockBatch]:
    out: List[StockBatch] = []
    for row in rows:
        data = row if isinstance(row, BatchCreate) else BatchCreate(**row)
        out.append(create_batch(db, **data.model_dump()))
    return out


def get_batch(db: Session, batch_id: int, *, lock: bool = False) -> StockBatch:
    q = db.query(StockBatch).filter(StockBatch.id == batch_id)
    if lock:
        db.flush()
        q = q.populate_existing().with_for_update()
    batch = q.one_or_none()
    if not batch:
        raise NotFound("Stock batch", batch_id)
    return batch


# ============================================================
# Conditional (compare-and-swap) updates of available_quantity
# ============================================================
def take_available(db: Session, batch: StockBatch, amount: Decimal) -> bool:
    """
    available -= amount, only if the row still has that much and is active.
    Returns False when another transaction got there first.
    """
    res = db.execute(
        update(StockBatch).where(
            StockBatch.id == batch.id,
            StockBatch.is_active.is_(True),
            StockBatch.available_quantity >= amount,
        ).values(
            available_quantity=StockBatch.available_quantity - amount,
            updated_at=now_local(),
        ).execution_options(synchronize_session=False))
    db.expire(batch, ["available_quantity", "updated_at"])
    return res.rowcount == 1


def put_back_available(db: Session, batch: StockBatch, amount: Decimal) -> bool:
    """available += amount, only while it stays within quantity."""
    res = db.execute(
        update(StockBatch).where(
            StockBatch.id == batch.id,
            StockBatch.available_quantity + amount <= StockBatch.quantity,
        ).values(
            available_quantity=StockBatch.available_quantity + amount,
            updated_at=now_local(),
        ).execution_options(synchronize_session=False))
    db.expire(batch, ["available_quantity", "updated_at"])
    return res.rowcount == 1


def reserve(db: Session, batch_id: int, amount) -> StockBatch:
    amt = qty4(amount)
    if amt <= 0:
        raise InvalidQuantity("Reserve amount must be greater than zero")

    db.flush()
    batch = get_batch(db, batch_id, lock=True)
    if not batch.is_active:
        raise InsufficientStock(f"Batch {batch_id} is inactive",
                                product_id=batch.product_id,
                                requested=amt,
                                available=Decimal("0"))
    if not take_available(db, batch, amt):
        raise InsufficientStock(
            f"Cannot reserve {amt} from batch {batch_id}: only {qty4(batch.available_quantity)} available",
            product_id=batch.product_id,
            requested=amt,
            available=qty4(batch.available_quantity),
        )
    return batch


def release(db: Session, batch_id: int, amount) -> StockBatch:
    amt = qty4(amount)
    if amt <= 0:
        raise InvalidQuantity("Release amount must be greater than zero")

    db.flush()
    batch = get_batch(db, batch_id, lock=True)
    if not put_back_available(db, batch, amt):
        headroom = qty4(D(batch.quantity) - D(batch.available_quantity))
        raise InsufficientStock(
            f"Cannot release {amt} to batch {batch_id}: only {headroom} is allocated",
            product_id=batch.product_id,
            requested=amt,
            available=headroom,
        )
    return batch


# ============================================================
# Adjustment / activation
# ============================================================
def adjust_quantity(
    db: Session,
    batch_id: int,
    delta,
    *,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    reference_type: str = REF_BATCH_ADJUSTMENT,
    reference_id: Optional[int] = None,
) -> StockBatch:
    """
    Signed change to the batch total. available follows the delta but is
    kept within [0, new quantity]. One ADJUSTMENT movement per call.
    """
    dq = qty4(delta)
    if dq == 0:
        raise InvalidQuantity("Adjustment delta cannot be zero")

    db.flush()
    batch = get_batch(db, batch_id, lock=True)

    new_qty = D(batch.quantity) + dq
    if new_qty < 0:
        raise InsufficientStock(
            f"Adjustment {dq} would make batch {batch_id} negative",
            product_id=batch.product_id,
            requested=-dq,
            available=qty4(batch.quantity),
        )

    new_avail = D(batch.available_quantity) + dq
    new_avail = min(max(new_avail, Decimal("0")), new_qty)

    batch.quantity = qty4(new_qty)
    batch.available_quantity = qty4(new_avail)
    db.flush()

    record_movement(
        db,
        product_id=batch.product_id,
        batch_id=batch.id,
        movement_type=MovementType.ADJUSTMENT,
        direction=StockDirection.IN if dq > 0 else StockDirection.OUT,
        quantity=abs(dq),
        unit_cost=batch.cost_price,
        reference_type=reference_type,
        reference_id=batch.id if reference_id is None else reference_id,
        user_id=user_id,
        notes=notes,
    )
    logger.info("Adjusted batch id=%s by %s -> qty=%s avail=%s", batch.id, dq,
                batch.quantity, batch.available_quantity)
    return batch


def deactivate(db: Session, batch_id: int) -> StockBatch:
    batch = get_batch(db, batch_id, lock=True)
    batch.is_active = False
    db.flush()
    return batch


def activate(db: Session, batch_id: int) -> StockBatch:
    batch = get_batch(db, batch_id, lock=True)
    batch.is_active = True
    db.flush()
    return batch


def deactivate_bulk(db: Session, batch_ids: Iterable[int]) -> int:
    ids = sorted({int(i) for i in batch_ids})
    if not ids:
        return 0
    rows = (db.query(StockBatch).filter(StockBatch.id.in_(ids)).with_for_update().all())
    for b in rows:
        b.is_active = False
    db.flush()
    return len(rows)


def is_referenced(db: Session, batch_id: int) -> bool:
    if db.query(StockMovement.id).filter(
            StockMovement.batch_id == batch_id).first():
        return True
    return db.query(PurchaseReceiptItem.id).filter(
        PurchaseReceiptItem.batch_id == batch_id).first() is not None


def remove_batch(db: Session, batch_id: int) -> bool:
    """
    Hard delete only an unreferenced batch; anything with history is
    deactivated. Returns True when the row was deleted.
    """
    batch = get_batch(db, batch_id, lock=True)
    if is_referenced(db, batch_id):
        batch.is_active = False
        db.flush()
        logger.info("Batch id=%s has history, deactivated instead of deleted",
                    batch_id)
        return False
    db.delete(batch)
    db.flush()
    return True


# ============================================================
# Stock-in
# ============================================================
def find_matching_batch(
    db: Session,
    *,
    product_id: int,
    batch_number: Optional[str],
    lot_number: Optional[str],
    expiry_date: Optional[date],
    supplier_id: Optional[int],
    cost_price,
) -> Optional[StockBatch]:
    batch_number = _clean(batch_number)
    if not batch_number:
        return None

    q = db.query(StockBatch).filter(
        StockBatch.product_id == product_id,
        StockBatch.batch_number == batch_number,
        StockBatch.is_active.is_(True),
        StockBatch.cost_price == cost4(cost_price),
    )
    lot = _clean(lot_number)
    q = q.filter(StockBatch.lot_number == lot) if lot else q.filter(
        StockBatch.lot_number.is_(None))
    q = q.filter(StockBatch.expiry_date == expiry_date) if expiry_date else q.filter(
        StockBatch.expiry_date.is_(None))
    q = q.filter(StockBatch.supplier_id == supplier_id) if supplier_id else q.filter(
        StockBatch.supplier_id.is_(None))
    return q.order_by(StockBatch.id.asc()).with_for_update().first()


def receive_stock(
    db: Session,
    *,
    product_id: int,
    quantity,
    cost_price,
    batch_number: Optional[str] = None,
    lot_number: Optional[str] = None,
    supplier_id: Optional[int] = None,
    manufacture_date: Optional[date] = None,
    expiry_date: Optional[date] = None,
    received_date: Optional[date] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    merge: bool = True,
) -> Tuple[StockBatch, StockMovement]:
    """
    Put stock on the shelf: augment an identical open batch or create a new
    one, then append the IN movement.
    """
    q = qty4(quantity)
    if q <= 0:
        raise InvalidQuantity("Received quantity must be greater than zero")

    batch = None
    if merge:
        batch = find_matching_batch(
            db,
            product_id=product_id,
            batch_number=batch_number,
            lot_number=lot_number,
            expiry_date=expiry_date,
            supplier_id=supplier_id,
            cost_price=cost_price,
        )

    if batch is not None:
        batch.quantity = qty4(D(batch.quantity) + q)
        batch.available_quantity = qty4(D(batch.available_quantity) + q)
        db.flush()
        logger.info("Augmented batch id=%s product=%s by %s", batch.id,
                    product_id, q)
    else:
        batch = create_batch(
            db,
            product_id=product_id,
            quantity=q,
            cost_price=cost_price,
            batch_number=batch_number,
            lot_number=lot_number,
            supplier_id=supplier_id,
            manufacture_date=manufacture_date,
            expiry_date=expiry_date,
            received_date=received_date,
            notes=notes,
        )

    mv = record_movement(
        db,
        product_id=product_id,
        batch_id=batch.id,
        movement_type=MovementType.IN,
        quantity=q,
        unit_cost=batch.cost_price,
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=user_id,
        notes=notes,
    )
    return batch, mv


# ============================================================
# Queries
# ============================================================
def _fifo(q):
    return q.order_by(StockBatch.received_date.asc(), StockBatch.id.asc())


def batches_for_product(db: Session,
                        product_id: int,
                        *,
                        active_only: bool = False) -> List[StockBatch]:
    q = db.query(StockBatch).filter(StockBatch.product_id == product_id)
    if active_only:
        q = q.filter(StockBatch.is_active.is_(True))
    return _fifo(q).all()


def batches_for_supplier(db: Session, supplier_id: int) -> List[StockBatch]:
    return _fifo(
        db.query(StockBatch).filter(StockBatch.supplier_id == supplier_id)).all()


def batches_by_lot_number(db: Session, lot_number: str) -> List[StockBatch]:
    return _fifo(
        db.query(StockBatch).filter(
            StockBatch.lot_number == _clean(lot_number))).all()


def batches_by_batch_number(db: Session, batch_number: str) -> List[StockBatch]:
    return _fifo(
        db.query(StockBatch).filter(
            StockBatch.batch_number == _clean(batch_number))).all()


def active_batches(db: Session,
                   product_id: Optional[int] = None) -> List[StockBatch]:
    q = db.query(StockBatch).filter(StockBatch.is_active.is_(True))
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)
    return _fifo(q).all()


def available_batches(db: Session, product_id: int) -> List[StockBatch]:
    return _fifo(
        db.query(StockBatch).filter(
            StockBatch.product_id == product_id,
            StockBatch.is_active.is_(True),
            StockBatch.available_quantity > 0,
        )).all()


def batches_received_between(db: Session, date_from: date,
                             date_to: date) -> List[StockBatch]:
    return _fifo(
        db.query(StockBatch).filter(
            StockBatch.received_date >= date_from,
            StockBatch.received_date <= date_to,
        )).all()


def expiring_batches(
    db: Session,
    days: int,
    *,
    product_id: Optional[int] = None,
    today: Optional[date] = None,
) -> List[StockBatch]:
    """Active batches with stock that expire between today and today + days."""
    today = today or today_local()
    q = db.query(StockBatch).filter(
        StockBatch.is_active.is_(True),
        StockBatch.available_quantity > 0,
        StockBatch.expiry_date.isnot(None),
        StockBatch.expiry_date >= today,
        StockBatch.expiry_date <= today + timedelta(days=int(days)),
    )
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)
    return q.order_by(StockBatch.expiry_date.asc(), StockBatch.id.asc()).all()


def expired_batches(
    db: Session,
    *,
    product_id: Optional[int] = None,
    today: Optional[date] = None,
    with_stock_only: bool = True,
) -> List[StockBatch]:
    today = today or today_local()
    q = db.query(StockBatch).filter(
        StockBatch.is_active.is_(True),
        StockBatch.expiry_date.isnot(None),
        StockBatch.expiry_date < today,
    )
    if with_stock_only:
        q = q.filter(StockBatch.available_quantity > 0)
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)
    return q.order_by(StockBatch.expiry_date.asc(), StockBatch.id.asc()).all()


def low_stock_batches(db: Session,
                      threshold,
                      *,
                      product_id: Optional[int] = None) -> List[StockBatch]:
    q = db.query(StockBatch).filter(
        StockBatch.is_active.is_(True),
        StockBatch.available_quantity > 0,
        StockBatch.available_quantity <= D(threshold),
    )
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)
    return q.order_by(StockBatch.available_quantity.asc(), StockBatch.id.asc()).all()


def search_batches(
    db: Session,
    *,
    q: Optional[str] = None,
    product_id: Optional[int] = None,
    supplier_id: Optional[int] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[StockBatch], int]:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or 20), 1), 200)

    query = db.query(StockBatch)
    text = (q or "").strip()
    if text:
        like = f"%{text}%"
        query = query.filter(
            or_(StockBatch.batch_number.ilike(like),
                StockBatch.lot_number.ilike(like)))
    if product_id is not None:
        query = query.filter(StockBatch.product_id == product_id)
    if supplier_id is not None:
        query = query.filter(StockBatch.supplier_id == supplier_id)
    if is_active is not None:
        query = query.filter(StockBatch.is_active.is_(bool(is_active)))

    total = query.count()
    rows = (query.order_by(StockBatch.created_at.desc(),
                           StockBatch.id.desc()).offset(
                               (page - 1) * page_size).limit(page_size).all())
    return rows, total


def batch_total_cost(batch: StockBatch) -> Decimal:
    return cost4(D(batch.cost_price) * D(batch.quantity))


def batch_available_value(batch: StockBatch) -> Decimal:
    return cost4(D(batch.cost_price) * D(batch.available_quantity))


def validate_batch_for_sale(db: Session,
                            batch_id: int,
                            quantity,
                            *,
                            today: Optional[date] = None) -> StockBatch:
    q = qty4(quantity)
    if q <= 0:
        raise InvalidQuantity("Quantity must be greater than zero")

    batch = get_batch(db, batch_id)
    avail = qty4(batch.available_quantity)
    if not batch.is_active:
        raise InsufficientStock(f"Batch {batch_id} is inactive",
                                product_id=batch.product_id,
                                requested=q,
                                available=Decimal("0"))
    if batch.is_expired(today or today_local()):
        raise InsufficientStock(
            f"Batch {batch_id} expired on {batch.expiry_date.isoformat()}",
            product_id=batch.product_id,
            requested=q,
            available=Decimal("0"))
    if avail < q:
        raise InsufficientStock(
            f"Batch {batch_id} has {avail} available, {q} requested",
            product_id=batch.product_id,
            requested=q,
            available=avail)
    return batch
