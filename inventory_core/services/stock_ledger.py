# inventory_core/services/stock_ledger.py
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import case, func
from sqlalchemy.orm import Query, Session

from inventory_core.core.exceptions import InvalidQuantity, InvalidRequest
from inventory_core.models.stock import (
    INCOMING_TYPES,
    OUTGOING_TYPES,
    MovementType,
    StockDirection,
    StockMovement,
)
from inventory_core.utils.decimals import D, cost4, qty4
from inventory_core.utils.timezone import day_end_exclusive, day_start

logger = logging.getLogger(__name__)


def resolve_movement_type(value: Union[MovementType, str]) -> MovementType:
    try:
        return MovementType(getattr(value, "value", value))
    except ValueError:
        raise InvalidRequest(f"Unknown movement type '{value}'")


def _resolve_direction(value: Union[StockDirection, str]) -> StockDirection:
    try:
        return StockDirection(getattr(value, "value", value))
    except ValueError:
        raise InvalidRequest(f"Unknown stock direction '{value}' (use IN or OUT)")


def direction_for(
    movement_type: MovementType,
    direction: Optional[Union[StockDirection, str]] = None,
) -> StockDirection:
    """
    IN/RETURN always add stock, OUT/SALE/DAMAGE always remove it.
    ADJUSTMENT and TRANSFER go either way, so the caller must say which.
    """
    if movement_type in INCOMING_TYPES:
        expected = StockDirection.IN
    elif movement_type in OUTGOING_TYPES:
        expected = StockDirection.OUT
    else:
        if direction is None:
            raise InvalidRequest(
                f"{movement_type.value} movements need an explicit direction")
        return _resolve_direction(direction)

    if direction is not None and _resolve_direction(direction) != expected:
        raise InvalidRequest(
            f"{movement_type.value} movements are always {expected.value}")
    return expected


def record_movement(
    db: Session,
    *,
    product_id: int,
    movement_type: Union[MovementType, str],
    quantity,
    unit_cost=None,
    batch_id: Optional[int] = None,
    direction: Optional[Union[StockDirection, str]] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """
    Append one ledger row. total_cost is fixed here and never recomputed.
    """
    q = qty4(quantity)
    if q <= 0:
        raise InvalidQuantity("Movement quantity must be greater than zero")

    mt = resolve_movement_type(movement_type)
    cost = cost4(unit_cost)
    if cost < 0:
        raise InvalidRequest("Unit cost cannot be negative")

    mv = StockMovement(
        product_id=product_id,
        batch_id=batch_id,
        movement_type=mt,
        direction=direction_for(mt, direction),
        quantity=q,
        unit_cost=cost,
        total_cost=cost4(cost * q),
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=user_id,
        notes=notes,
    )
    db.add(mv)
    db.flush()
    logger.debug("Ledger %s %s product=%s batch=%s qty=%s ref=%s:%s",
                 mt.value, mv.direction.value, product_id, batch_id, q,
                 reference_type, reference_id)
    return mv


def _movement_query(
    db: Session,
    *,
    product_id: Optional[int] = None,
    batch_id: Optional[int] = None,
    user_id: Optional[int] = None,
    movement_type: Optional[Union[MovementType, str]] = None,
    date_from: Optional[Union[date, datetime]] = None,
    date_to: Optional[Union[date, datetime]] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
) -> Query:
    q = db.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if batch_id is not None:
        q = q.filter(StockMovement.batch_id == batch_id)
    if user_id is not None:
        q = q.filter(StockMovement.user_id == user_id)
    if movement_type is not None:
        q = q.filter(
            StockMovement.movement_type == resolve_movement_type(movement_type))
    if date_from is not None:
        q = q.filter(StockMovement.created_at >= day_start(date_from))
    if date_to is not None:
        # whole day when a date is given
        q = q.filter(StockMovement.created_at < day_end_exclusive(date_to))
    if reference_type:
        q = q.filter(StockMovement.reference_type == reference_type)
    if reference_id is not None:
        q = q.filter(StockMovement.reference_id == reference_id)
    return q


def list_movements(
    db: Session,
    *,
    page: int = 1,
    page_size: int = 50,
    **filters,
) -> Tuple[List[StockMovement], int]:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or 50), 1), 500)

    q = _movement_query(db, **filters)
    total = q.count()
    rows = (q.order_by(StockMovement.created_at.desc(),
                       StockMovement.id.desc()).offset(
                           (page - 1) * page_size).limit(page_size).all())
    return rows, total


def count_movements(db: Session, **filters) -> int:
    return _movement_query(db, **filters).count()


def movements_for_reference(db: Session, reference_type: str,
                            reference_id: int) -> List[StockMovement]:
    return (_movement_query(db,
                            reference_type=reference_type,
                            reference_id=reference_id).order_by(
                                StockMovement.id.asc()).all())


def movements_for_product(
    db: Session,
    product_id: int,
    date_from: Optional[Union[date, datetime]] = None,
    date_to: Optional[Union[date, datetime]] = None,
) -> List[StockMovement]:
    return (_movement_query(db,
                            product_id=product_id,
                            date_from=date_from,
                            date_to=date_to).order_by(
                                StockMovement.created_at.desc(),
                                StockMovement.id.desc()).all())


def _signed_qty():
    return case(
        (StockMovement.direction == StockDirection.IN, StockMovement.quantity),
        else_=-StockMovement.quantity,
    )


def ledger_balance(db: Session,
                   product_id: int,
                   *,
                   batch_id: Optional[int] = None) -> Decimal:
    """Net quantity the ledger says is on hand (Σ IN − Σ OUT)."""
    q = db.query(func.coalesce(func.sum(_signed_qty()), 0)).filter(
        StockMovement.product_id == product_id)
    if batch_id is not None:
        q = q.filter(StockMovement.batch_id == batch_id)
    return qty4(D(q.scalar()))


def movement_totals_by_type(
    db: Session,
    product_id: int,
    date_from: Optional[Union[date, datetime]] = None,
    date_to: Optional[Union[date, datetime]] = None,
) -> Dict[str, Dict[str, Decimal]]:
    q = _movement_query(db,
                        product_id=product_id,
                        date_from=date_from,
                        date_to=date_to)
    rows = (q.with_entities(
        StockMovement.movement_type,
        func.coalesce(func.sum(StockMovement.quantity), 0),
        func.coalesce(func.sum(StockMovement.total_cost), 0),
    ).group_by(StockMovement.movement_type).all())

    out: Dict[str, Dict[str, Decimal]] = {}
    for mt, qty, cost in rows:
        key = mt.value if isinstance(mt, MovementType) else str(mt)
        out[key] = {"quantity": qty4(D(qty)), "total_cost": cost4(D(cost))}
    return out
