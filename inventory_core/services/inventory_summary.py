# inventory_core/services/inventory_summary.py
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from inventory_core.models.stock import StockBatch
from inventory_core.schemas.inventory import StockLevelOut
from inventory_core.utils.decimals import D, ZERO, cost4, qty4


def _active_totals(db: Session, product_ids: Optional[Iterable[int]] = None):
    q = db.query(
        StockBatch.product_id,
        func.count(StockBatch.id),
        func.coalesce(func.sum(StockBatch.quantity), 0),
        func.coalesce(func.sum(StockBatch.available_quantity), 0),
        func.coalesce(
            func.sum(StockBatch.cost_price * StockBatch.available_quantity), 0),
    ).filter(StockBatch.is_active.is_(True))
    if product_ids is not None:
        q = q.filter(StockBatch.product_id.in_(list(product_ids)))
    return q.group_by(StockBatch.product_id).all()


def _level(product_id: int,
           batch_count=0,
           on_hand=ZERO,
           available=ZERO,
           value=ZERO,
           reorder_level=None) -> StockLevelOut:
    on_hand = qty4(D(on_hand))
    available = qty4(D(available))
    value = cost4(D(value))
    wac = cost4(value / available) if available > 0 else ZERO
    rl = D(reorder_level) if reorder_level is not None else None
    return StockLevelOut(
        product_id=product_id,
        on_hand=on_hand,
        available=available,
        allocated=qty4(on_hand - available),
        batch_count=int(batch_count or 0),
        weighted_average_cost=wac,
        total_value=value,
        reorder_level=rl,
        is_low_stock=rl is not None and on_hand <= rl,
    )


def stock_level(db: Session,
                product_id: int,
                reorder_level=None) -> StockLevelOut:
    """
    on_hand = Σ quantity, available = Σ available_quantity over active batches.
    Always derived from the batch rows, never cached.
    """
    rows = _active_totals(db, [product_id])
    if not rows:
        return _level(product_id, reorder_level=reorder_level)
    _pid, cnt, qty, avail, value = rows[0]
    return _level(product_id, cnt, qty, avail, value, reorder_level)


def stock_levels(
    db: Session,
    product_ids: Optional[Iterable[int]] = None,
    reorder_levels: Optional[Mapping[int, object]] = None,
) -> List[StockLevelOut]:
    reorder_levels = reorder_levels or {}
    ids = list(product_ids) if product_ids is not None else None

    found: Dict[int, StockLevelOut] = {}
    for pid, cnt, qty, avail, value in _active_totals(db, ids):
        found[pid] = _level(pid, cnt, qty, avail, value, reorder_levels.get(pid))

    # products asked for (or with a threshold) but without active stock
    wanted = set(ids or []) | set(reorder_levels.keys())
    for pid in wanted - set(found):
        found[pid] = _level(pid, reorder_level=reorder_levels.get(pid))

    return [found[pid] for pid in sorted(found)]


def low_stock_products(db: Session,
                       reorder_levels: Mapping[int, object]) -> List[StockLevelOut]:
    """Products at or below their reorder level; thresholds come from the catalog."""
    levels = stock_levels(db, list(reorder_levels.keys()), reorder_levels)
    return [lv for lv in levels if lv.is_low_stock]


def weighted_average_cost(db: Session, product_id: int) -> Decimal:
    """Σ(cost × available) / Σ available over active batches with stock."""
    value, avail = db.query(
        func.coalesce(
            func.sum(StockBatch.cost_price * StockBatch.available_quantity), 0),
        func.coalesce(func.sum(StockBatch.available_quantity), 0),
    ).filter(
        StockBatch.product_id == product_id,
        StockBatch.is_active.is_(True),
        StockBatch.available_quantity > 0,
    ).one()
    avail = D(avail)
    if avail <= 0:
        return ZERO
    return cost4(D(value) / avail)


def product_total_value(db: Session, product_id: int) -> Decimal:
    return stock_level(db, product_id).total_value
