# inventory_core/services/allocation.py
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from inventory_core.core.config import settings
from inventory_core.core.exceptions import (
    ConcurrentUpdate,
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
)
from inventory_core.models.stock import (
    IssuePolicy,
    MovementType,
    StockBatch,
    StockMovement,
)
from inventory_core.schemas.stock import (
    AllocationLine,
    AllocationRequest,
    AllocationResult,
)
from inventory_core.services.batch_store import (
    get_batch,
    put_back_available,
    take_available,
)
from inventory_core.services.stock_ledger import (
    record_movement,
    resolve_movement_type,
)
from inventory_core.utils.decimals import D, cost4, qty4
from inventory_core.utils.timezone import today_local

logger = logging.getLogger(__name__)

ISSUE_TYPES = frozenset(
    {MovementType.OUT, MovementType.SALE, MovementType.DAMAGE})


class _PlanConflict(Exception):
    """A planned batch changed between planning and the conditional update."""


def resolve_policy(policy: Optional[Union[IssuePolicy, str]] = None) -> IssuePolicy:
    raw = policy if policy is not None else settings.DEFAULT_ISSUE_POLICY
    try:
        return IssuePolicy(str(getattr(raw, "value", raw)).strip().upper())
    except ValueError:
        raise InvalidRequest(
            f"Unknown issue policy '{raw}' (use FIFO, LIFO or FEFO)")


def _validate_qty(quantity) -> Decimal:
    if quantity is None:
        raise InvalidQuantity("Requested quantity is required")
    q = qty4(quantity)
    if q <= 0:
        raise InvalidQuantity("Requested quantity must be greater than zero")
    return q


def _order_nulls_last(col):
    return (col.is_(None).asc(), col.asc())


def _ordering(policy: IssuePolicy):
    if policy == IssuePolicy.LIFO:
        return (StockBatch.received_date.desc(), StockBatch.id.desc())
    if policy == IssuePolicy.FEFO:
        return (*_order_nulls_last(StockBatch.expiry_date),
                StockBatch.received_date.asc(), StockBatch.id.asc())
    return (StockBatch.received_date.asc(), StockBatch.id.asc())


def candidate_batches(
    db: Session,
    product_id: int,
    policy: Union[IssuePolicy, str, None] = None,
    *,
    include_expired: Optional[bool] = None,
    today: Optional[date] = None,
    lock: bool = False,
) -> List[StockBatch]:
    """Active batches with stock, in the order the policy issues them."""
    pol = resolve_policy(policy)
    if include_expired is None:
        include_expired = settings.ALLOW_EXPIRED_ALLOCATION

    q = db.query(StockBatch).filter(
        StockBatch.product_id == product_id,
        StockBatch.is_active.is_(True),
        StockBatch.available_quantity > 0,
    )
    if not include_expired:
        today = today or today_local()
        q = q.filter(
            or_(StockBatch.expiry_date.is_(None),
                StockBatch.expiry_date >= today))

    q = q.order_by(*_ordering(pol)).populate_existing()
    if lock:
        q = q.with_for_update()
    return q.all()


def _pick(
    db: Session,
    product_id: int,
    quantity: Decimal,
    policy: IssuePolicy,
    *,
    include_expired: Optional[bool],
    today: Optional[date],
    lock: bool,
) -> List[Tuple[StockBatch, Decimal]]:
    batches = candidate_batches(db,
                                product_id,
                                policy,
                                include_expired=include_expired,
                                today=today,
                                lock=lock)
    if not batches:
        raise InsufficientStock(
            f"No stock available for product {product_id}",
            product_id=product_id,
            requested=quantity,
            available=Decimal("0"),
        )

    remaining = quantity
    picks: List[Tuple[StockBatch, Decimal]] = []
    for b in batches:
        if remaining <= 0:
            break
        avail = qty4(b.available_quantity)
        if avail <= 0:
            continue
        take = min(avail, remaining)
        picks.append((b, take))
        remaining -= take

    if remaining > 0:
        available = quantity - remaining
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}: requested {quantity}, available {available}",
            product_id=product_id,
            requested=quantity,
            available=available,
        )
    return picks


def _to_lines(picks: List[Tuple[StockBatch, Decimal]]) -> List[AllocationLine]:
    lines = []
    for b, take in picks:
        unit_cost = cost4(b.cost_price)
        lines.append(
            AllocationLine(
                batch_id=b.id,
                quantity=take,
                unit_cost=unit_cost,
                total_cost=cost4(unit_cost * take),
                batch_number=b.batch_number,
                expiry_date=b.expiry_date,
                received_date=b.received_date,
            ))
    return lines


def _result(product_id: int, policy: IssuePolicy, lines: List[AllocationLine],
            movements: Optional[List[StockMovement]] = None) -> AllocationResult:
    return AllocationResult(
        product_id=product_id,
        policy=policy,
        lines=lines,
        total_quantity=qty4(sum((ln.quantity for ln in lines), Decimal("0"))),
        total_cost=cost4(sum((ln.total_cost for ln in lines), Decimal("0"))),
        movement_ids=[m.id for m in (movements or [])],
    )


def plan_allocation(
    db: Session,
    product_id: int,
    quantity,
    policy: Union[IssuePolicy, str, None] = None,
    *,
    include_expired: Optional[bool] = None,
    today: Optional[date] = None,
) -> List[AllocationLine]:
    """
    Dry run: which batches would be issued and how much of each.
    Raises InsufficientStock exactly as allocate_stock would; touches nothing.
    """
    q = _validate_qty(quantity)
    pol = resolve_policy(policy)
    db.flush()
    picks = _pick(db,
                  product_id,
                  q,
                  pol,
                  include_expired=include_expired,
                  today=today,
                  lock=False)
    return _to_lines(picks)


def cost_of_goods_preview(
    db: Session,
    product_id: int,
    quantity,
    policy: Union[IssuePolicy, str, None] = None,
    *,
    include_expired: Optional[bool] = None,
    today: Optional[date] = None,
) -> AllocationResult:
    pol = resolve_policy(policy)
    lines = plan_allocation(db,
                            product_id,
                            quantity,
                            pol,
                            include_expired=include_expired,
                            today=today)
    return _result(product_id, pol, lines)


def check_availability(
    db: Session,
    product_id: int,
    quantity,
    *,
    include_expired: Optional[bool] = None,
    today: Optional[date] = None,
) -> bool:
    q = _validate_qty(quantity)
    db.flush()
    batches = candidate_batches(db,
                                product_id,
                                include_expired=include_expired,
                                today=today)
    total = sum((D(b.available_quantity) for b in batches), Decimal("0"))
    return total >= q


def _apply(
    db: Session,
    product_id: int,
    picks: List[Tuple[StockBatch, Decimal]],
    lines: List[AllocationLine],
    *,
    movement_type: MovementType,
    reference_type: Optional[str],
    reference_id: Optional[int],
    user_id: Optional[int],
    notes: Optional[str],
) -> List[StockMovement]:
    for b, take in picks:
        if not take_available(db, b, take):
            raise _PlanConflict(b.id)

    return [
        record_movement(
            db,
            product_id=product_id,
            batch_id=ln.batch_id,
            movement_type=movement_type,
            quantity=ln.quantity,
            unit_cost=ln.unit_cost,
            reference_type=reference_type,
            reference_id=reference_id,
            user_id=user_id,
            notes=notes,
        ) for ln in lines
    ]


def allocate_stock(
    db: Session,
    *,
    product_id: int,
    quantity,
    policy: Union[IssuePolicy, str, None] = None,
    movement_type: Union[MovementType, str] = MovementType.SALE,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    include_expired: Optional[bool] = None,
    today: Optional[date] = None,
) -> AllocationResult:
    """
    Commit `quantity` of a product across its batches under `policy`.

    The full plan is computed before any batch is touched, so a shortfall
    raises InsufficientStock with nothing changed. Each planned batch is then
    decremented with a conditional UPDATE inside a SAVEPOINT; if one of them
    no longer has the planned amount the savepoint is rolled back and the
    plan is recomputed from fresh rows. One ledger movement is appended per
    touched batch, costed at that batch's cost price.
    """
    q = _validate_qty(quantity)
    mt = resolve_movement_type(movement_type)
    if mt not in ISSUE_TYPES:
        raise InvalidRequest(
            f"{mt.value} is not an issuing movement (use OUT, SALE or DAMAGE)")
    pol = resolve_policy(policy)

    db.flush()
    attempts = max(int(settings.ALLOCATION_MAX_RETRIES), 1)
    for attempt in range(1, attempts + 1):
        picks = _pick(db,
                      product_id,
                      q,
                      pol,
                      include_expired=include_expired,
                      today=today,
                      lock=True)
        lines = _to_lines(picks)
        try:
            with db.begin_nested():
                movements = _apply(db,
                                   product_id,
                                   picks,
                                   lines,
                                   movement_type=mt,
                                   reference_type=reference_type,
                                   reference_id=reference_id,
                                   user_id=user_id,
                                   notes=notes)
        except _PlanConflict as exc:
            logger.warning(
                "Batch %s changed under allocation of product=%s (attempt %s/%s), re-planning",
                exc.args[0], product_id, attempt, attempts)
            continue

        result = _result(product_id, pol, lines, movements)
        logger.info("Allocated %s of product=%s via %s across %s batch(es), cost=%s",
                    q, product_id, pol.value, len(lines), result.total_cost)
        return result

    raise ConcurrentUpdate(
        f"Stock of product {product_id} kept changing during allocation; gave up after {attempts} attempts"
    )


def allocate_many(
    db: Session,
    requests: Iterable[Union[AllocationRequest, dict]],
    *,
    movement_type: Union[MovementType, str] = MovementType.SALE,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    include_expired: Optional[bool] = None,
    today: Optional[date] = None,
) -> List[AllocationResult]:
    """
    All-or-nothing allocation of several lines (e.g. one sale).
    A failing line raises with `line_index` set and no line stays applied.
    """
    reqs = [
        r if isinstance(r, AllocationRequest) else AllocationRequest(**r)
        for r in requests
    ]
    if not reqs:
        raise InvalidRequest("At least one allocation line is required")

    results: List[AllocationResult] = []
    with db.begin_nested():
        for idx, req in enumerate(reqs):
            try:
                results.append(
                    allocate_stock(db,
                                   product_id=req.product_id,
                                   quantity=req.quantity,
                                   policy=req.policy,
                                   movement_type=movement_type,
                                   reference_type=reference_type,
                                   reference_id=reference_id,
                                   user_id=user_id,
                                   notes=notes,
                                   include_expired=include_expired,
                                   today=today))
            except InsufficientStock as exc:
                exc.line_index = idx
                raise
    return results


def return_to_batch(
    db: Session,
    *,
    batch_id: int,
    quantity,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """Put issued stock back into the batch it came from (RETURN movement)."""
    q = _validate_qty(quantity)
    db.flush()
    batch = get_batch(db, batch_id, lock=True)
    if not put_back_available(db, batch, q):
        issued = qty4(D(batch.quantity) - D(batch.available_quantity))
        raise InvalidQuantity(
            f"Cannot return {q} to batch {batch_id}: only {issued} was issued")

    return record_movement(
        db,
        product_id=batch.product_id,
        batch_id=batch.id,
        movement_type=MovementType.RETURN,
        quantity=q,
        unit_cost=batch.cost_price,
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=user_id,
        notes=notes,
    )
