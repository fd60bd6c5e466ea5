# inventory_core/services/purchase_receipt_service.py
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from inventory_core.core.config import settings
from inventory_core.core.exceptions import (
    DuplicateReceiptNumber,
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    InvalidStateTransition,
    NotFound,
)
from inventory_core.models.purchase_receipt import (
    PurchaseReceipt,
    PurchaseReceiptItem,
    QualityStatus,
    ReceiptStatus,
)
from inventory_core.schemas.purchase_receipt import (
    DeliveryIn,
    ReceiptCreate,
    ReceiptItemIn,
    ReceiptItemUpdate,
    ReceiptUpdate,
    ReceiveGoodsIn,
    ReceiveLineIn,
)
from inventory_core.services.batch_store import (
    adjust_quantity,
    get_batch,
    receive_stock,
)
from inventory_core.services.number_series import next_receipt_number
from inventory_core.utils.decimals import D, ZERO, money2, pct_of, qty4
from inventory_core.utils.timezone import (
    day_end_exclusive,
    day_start,
    now_local,
    today_local,
)

logger = logging.getLogger(__name__)

REF_RECEIPT_ITEM = "purchase_receipt_item"
REF_RECEIPT_CANCEL = "purchase_receipt_cancel"

S = ReceiptStatus

_ALLOWED_TRANSITIONS = {
    S.draft: {S.pending, S.approved, S.cancelled},
    S.pending: {S.approved, S.cancelled},
    S.approved: {S.ordered, S.cancelled},
    S.ordered: {S.received, S.partial, S.completed, S.cancelled},
    S.received: {S.partial, S.completed, S.cancelled},
    S.partial: {S.partial, S.completed, S.cancelled},
    S.completed: set(),
    S.cancelled: set(),
}

EDITABLE_STATUSES = {S.draft, S.pending}
RECEIVABLE_STATUSES = {S.ordered, S.received, S.partial}


def _status(pr: PurchaseReceipt) -> ReceiptStatus:
    return ReceiptStatus(pr.status)


def resolve_status(value: Union[ReceiptStatus, str]) -> ReceiptStatus:
    try:
        return ReceiptStatus(getattr(value, "value", value))
    except ValueError:
        raise InvalidRequest(f"Unknown receipt status '{value}'")


def can_transition(current: Union[ReceiptStatus, str],
                   target: Union[ReceiptStatus, str]) -> bool:
    return resolve_status(target) in _ALLOWED_TRANSITIONS.get(
        resolve_status(current), set())


def _change_status(pr: PurchaseReceipt, target: ReceiptStatus,
                   action: str) -> None:
    current = _status(pr)
    if not can_transition(current, target):
        raise InvalidStateTransition(current, action)
    pr.status = target
    logger.info("Receipt %s: %s -> %s", pr.receipt_number, current.value,
                target.value)


# ============================================================
# Fetch
# ============================================================
def get_receipt(db: Session,
                receipt_id: int,
                *,
                lock: bool = False) -> PurchaseReceipt:
    q = db.query(PurchaseReceipt).filter(PurchaseReceipt.id == receipt_id)
    if lock:
        q = q.populate_existing().with_for_update()
    else:
        q = q.options(selectinload(PurchaseReceipt.items))
    pr = q.one_or_none()
    if not pr:
        raise NotFound("Purchase receipt", receipt_id)
    return pr


def get_receipt_by_number(db: Session, receipt_number: str) -> PurchaseReceipt:
    pr = (db.query(PurchaseReceipt).options(selectinload(
        PurchaseReceipt.items)).filter(PurchaseReceipt.receipt_number ==
                                       (receipt_number or "").strip()).one_or_none())
    if not pr:
        raise NotFound("Purchase receipt", receipt_number)
    return pr


def _lock_items(db: Session, receipt_id: int) -> List[PurchaseReceiptItem]:
    return (db.query(PurchaseReceiptItem).filter(
        PurchaseReceiptItem.receipt_id == receipt_id).order_by(
            PurchaseReceiptItem.id.asc()).populate_existing().with_for_update().all())


def _get_item(pr: PurchaseReceipt, item_id: int) -> PurchaseReceiptItem:
    for it in pr.items:
        if it.id == item_id:
            return it
    raise NotFound("Purchase receipt item", item_id)


# ============================================================
# Financials
# ============================================================
def compute_line(item: PurchaseReceiptItem) -> PurchaseReceiptItem:
    """
    total_price = ordered × unit price − line discount.
    A discount percentage wins over a flat amount; the amount is capped at
    the line value so a line never goes negative.
    """
    base = money2(D(item.ordered_quantity) * D(item.unit_price))
    pct = D(item.discount_percent)
    if pct > 0:
        disc = pct_of(base, pct)
    else:
        disc = min(money2(item.discount_amount), base)

    item.discount_amount = disc
    item.total_price = money2(max(base - disc, ZERO))
    return item


def compute_receipt_totals(pr: PurchaseReceipt) -> PurchaseReceipt:
    """
    sub_total = Σ line totals
    discount  = sub_total × discount_percent, or the flat discount_amount
    tax       = Σ line tax + (sub_total − discount) × tax_rate
    total     = sub_total − discount + tax + shipping (never below zero)
    """
    sub = ZERO
    line_tax = ZERO
    for it in pr.items:
        compute_line(it)
        sub += D(it.total_price)
        line_tax += money2(it.tax_amount)
    sub = money2(sub)

    pct = D(pr.discount_percent)
    if pct > 0:
        disc = pct_of(sub, pct)
    else:
        disc = min(money2(pr.discount_amount), sub)

    tax = money2(line_tax + pct_of(sub - disc, pr.tax_rate))
    total = sub - disc + tax + money2(pr.shipping_cost)

    pr.sub_total = sub
    pr.discount_amount = disc
    pr.tax_amount = tax
    pr.total_amount = money2(max(total, ZERO))
    return pr


def _check_header_discount(percent, amount) -> None:
    if D(percent) > 0 and D(amount) > 0:
        raise InvalidRequest(
            "Give the header discount as a percentage or an amount, not both")


# ============================================================
# Create / edit (order phase)
# ============================================================
def _new_item(data: ReceiptItemIn) -> PurchaseReceiptItem:
    q = qty4(data.ordered_quantity)
    if q <= 0:
        raise InvalidQuantity("Ordered quantity must be greater than zero")
    return PurchaseReceiptItem(
        product_id=data.product_id,
        ordered_quantity=q,
        unit_price=D(data.unit_price),
        discount_percent=D(data.discount_percent),
        discount_amount=money2(data.discount_amount),
        tax_amount=money2(data.tax_amount),
        order_notes=data.order_notes,
        received_quantity=ZERO,
        accepted_quantity=ZERO,
        rejected_quantity=ZERO,
        damaged_quantity=ZERO,
        quality_status=QualityStatus.pending,
        stock_updated=False,
    )


def _receipt_number_taken(db: Session, number: str) -> bool:
    return db.query(PurchaseReceipt.id).filter(
        PurchaseReceipt.receipt_number == number).first() is not None


def create_receipt(db: Session,
                   payload: ReceiptCreate,
                   *,
                   user_id: Optional[int] = None) -> PurchaseReceipt:
    _check_header_discount(payload.discount_percent, payload.discount_amount)

    manual_number = (payload.receipt_number or "").strip()
    if manual_number and _receipt_number_taken(db, manual_number):
        raise DuplicateReceiptNumber(
            f"Receipt number {manual_number} already exists")

    attempts = 1 if manual_number else max(
        int(settings.NUMBER_SERIES_MAX_RETRIES), 1)

    for attempt in range(1, attempts + 1):
        number = manual_number or next_receipt_number(db)
        pr = PurchaseReceipt(
            receipt_number=number,
            supplier_id=payload.supplier_id,
            status=S.draft,
            order_date=payload.order_date or today_local(),
            expected_date=payload.expected_date,
            reference=payload.reference,
            terms=payload.terms,
            order_notes=payload.order_notes,
            discount_percent=D(payload.discount_percent),
            discount_amount=money2(payload.discount_amount),
            tax_rate=D(payload.tax_rate),
            shipping_cost=money2(payload.shipping_cost),
            currency=(payload.currency or settings.DEFAULT_CURRENCY).upper(),
            quality_check=False,
            created_by=user_id,
        )
        for data in payload.items:
            pr.items.append(_new_item(data))
        compute_receipt_totals(pr)

        try:
            with db.begin_nested():
                db.add(pr)
        except IntegrityError:
            logger.warning("Receipt number %s collided (attempt %s/%s)",
                           number, attempt, attempts)
            continue

        logger.info("Created receipt %s supplier=%s items=%s total=%s",
                    pr.receipt_number, pr.supplier_id, len(pr.items),
                    pr.total_amount)
        return pr

    raise DuplicateReceiptNumber(
        "Could not store the receipt under a unique receipt number")


def _ensure_editable(pr: PurchaseReceipt, action: str) -> None:
    if _status(pr) not in EDITABLE_STATUSES:
        raise InvalidStateTransition(_status(pr), action)


def update_receipt(db: Session, receipt_id: int,
                   payload: ReceiptUpdate) -> PurchaseReceipt:
    pr = get_receipt(db, receipt_id, lock=True)
    _ensure_editable(pr, "edit")

    data = payload.model_dump(exclude_unset=True)
    _check_header_discount(data.get("discount_percent"),
                           data.get("discount_amount"))

    for field in ("supplier_id", "order_date", "expected_date", "reference",
                  "terms", "order_notes"):
        if field in data:
            setattr(pr, field, data[field])

    if data.get("discount_percent") is not None:
        pr.discount_percent = D(data["discount_percent"])
        if pr.discount_percent > 0:
            pr.discount_amount = ZERO
    if data.get("discount_amount") is not None:
        pr.discount_amount = money2(data["discount_amount"])
        if pr.discount_amount > 0:
            pr.discount_percent = ZERO
    if data.get("tax_rate") is not None:
        pr.tax_rate = D(data["tax_rate"])
    if data.get("shipping_cost") is not None:
        pr.shipping_cost = money2(data["shipping_cost"])

    compute_receipt_totals(pr)
    db.flush()
    return pr


def add_item(db: Session, receipt_id: int,
             payload: ReceiptItemIn) -> PurchaseReceiptItem:
    pr = get_receipt(db, receipt_id, lock=True)
    _ensure_editable(pr, "add items to")

    it = _new_item(payload)
    pr.items.append(it)
    compute_receipt_totals(pr)
    db.flush()
    return it


def update_item(db: Session, receipt_id: int, item_id: int,
                payload: ReceiptItemUpdate) -> PurchaseReceiptItem:
    pr = get_receipt(db, receipt_id, lock=True)
    _ensure_editable(pr, "edit items of")
    it = _get_item(pr, item_id)

    data = payload.model_dump(exclude_unset=True)
    if data.get("ordered_quantity") is not None:
        q = qty4(data["ordered_quantity"])
        if q <= 0:
            raise InvalidQuantity("Ordered quantity must be greater than zero")
        it.ordered_quantity = q
    if data.get("unit_price") is not None:
        it.unit_price = D(data["unit_price"])
    if data.get("discount_percent") is not None:
        it.discount_percent = D(data["discount_percent"])
    if data.get("discount_amount") is not None:
        it.discount_amount = money2(data["discount_amount"])
        it.discount_percent = ZERO
    if data.get("tax_amount") is not None:
        it.tax_amount = money2(data["tax_amount"])
    if "order_notes" in data:
        it.order_notes = data["order_notes"]

    compute_receipt_totals(pr)
    db.flush()
    return it


def remove_item(db: Session, receipt_id: int, item_id: int) -> PurchaseReceipt:
    pr = get_receipt(db, receipt_id, lock=True)
    _ensure_editable(pr, "remove items from")
    it = _get_item(pr, item_id)

    pr.items.remove(it)
    compute_receipt_totals(pr)
    db.flush()
    return pr


def delete_receipt(db: Session, receipt_id: int) -> None:
    pr = get_receipt(db, receipt_id, lock=True)
    if _status(pr) not in {S.draft, S.cancelled}:
        raise InvalidStateTransition(_status(pr), "delete")
    if any(it.stock_updated for it in pr.items):
        raise InvalidStateTransition(
            _status(pr), "delete",
            f"Receipt {pr.receipt_number} has moved stock and must be kept")
    db.delete(pr)
    db.flush()
    logger.info("Deleted receipt %s", pr.receipt_number)


# ============================================================
# Order-phase transitions
# ============================================================
def submit_receipt(db: Session,
                   receipt_id: int,
                   *,
                   user_id: Optional[int] = None) -> PurchaseReceipt:
    pr = get_receipt(db, receipt_id, lock=True)
    if _status(pr) != S.draft:
        raise InvalidStateTransition(_status(pr), "submit")
    if not pr.items:
        raise InvalidRequest("Receipt has no items")
    _change_status(pr, S.pending, "submit")
    db.flush()
    return pr


def approve_receipt(db: Session,
                    receipt_id: int,
                    *,
                    user_id: Optional[int] = None) -> PurchaseReceipt:
    pr = get_receipt(db, receipt_id, lock=True)
    if _status(pr) not in {S.draft, S.pending}:
        raise InvalidStateTransition(_status(pr), "approve")
    if not pr.items:
        raise InvalidRequest("Receipt has no items")

    _change_status(pr, S.approved, "approve")
    pr.approved_by = user_id
    pr.approved_at = now_local()
    db.flush()
    return pr


def send_to_supplier(db: Session,
                     receipt_id: int,
                     *,
                     user_id: Optional[int] = None) -> PurchaseReceipt:
    pr = get_receipt(db, receipt_id, lock=True)
    if _status(pr) != S.approved:
        raise InvalidStateTransition(_status(pr), "send")

    _change_status(pr, S.ordered, "send")
    pr.sent_by = user_id
    pr.sent_at = now_local()
    db.flush()
    return pr


# ============================================================
# Receipt phase
# ============================================================
def _apply_delivery(pr: PurchaseReceipt, data: DeliveryIn) -> None:
    for field in ("delivery_date", "delivery_note", "invoice_number",
                  "invoice_date", "vehicle_number", "driver_name",
                  "receipt_notes"):
        val = getattr(data, field, None)
        if val is not None:
            setattr(pr, field, val)
    pr.received_date = data.received_date or pr.received_date or today_local()


def record_delivery(db: Session,
                    receipt_id: int,
                    payload: DeliveryIn,
                    *,
                    user_id: Optional[int] = None) -> PurchaseReceipt:
    """Goods are at the dock; lines are inspected later by receive_goods."""
    pr = get_receipt(db, receipt_id, lock=True)
    if _status(pr) != S.ordered:
        raise InvalidStateTransition(_status(pr), "record a delivery for")

    _apply_delivery(pr, payload)
    pr.received_by = user_id
    _change_status(pr, S.received, "record a delivery for")
    db.flush()
    return pr


def _validate_disposition(it: PurchaseReceiptItem, ln: ReceiveLineIn) -> None:
    received = qty4(ln.received_quantity)
    accepted = qty4(ln.accepted_quantity)
    rejected = qty4(ln.rejected_quantity)
    damaged = qty4(ln.damaged_quantity)

    if min(received, accepted, rejected, damaged) < 0:
        raise InvalidQuantity(f"Line {it.id}: quantities cannot be negative")
    if received > qty4(it.ordered_quantity):
        raise InvalidQuantity(
            f"Line {it.id}: received {received} exceeds ordered {qty4(it.ordered_quantity)}")
    if accepted + rejected + damaged > received:
        raise InvalidQuantity(
            f"Line {it.id}: accepted + rejected + damaged exceeds received {received}")

    mfg = ln.manufacture_date or it.manufacture_date
    exp = ln.expiry_date or it.expiry_date
    if mfg and exp and exp < mfg:
        raise InvalidRequest(
            f"Line {it.id}: expiry date cannot be before manufacture date")


def _derive_quality(accepted: Decimal, rejected: Decimal,
                    damaged: Decimal) -> QualityStatus:
    if accepted > 0 and rejected <= 0 and damaged <= 0:
        return QualityStatus.good
    if accepted <= 0 and rejected > 0 and damaged <= 0:
        return QualityStatus.rejected
    if damaged > 0 and accepted <= 0:
        return QualityStatus.damaged
    if accepted > 0:
        # mixed outcome, the accepted part went to stock
        return QualityStatus.good
    return QualityStatus.pending


def _is_complete(items: List[PurchaseReceiptItem]) -> bool:
    return bool(items) and all(it.is_fully_received and it.is_settled
                               for it in items)


def receive_goods(db: Session,
                  receipt_id: int,
                  payload: ReceiveGoodsIn,
                  *,
                  user_id: Optional[int] = None) -> PurchaseReceipt:
    """
    Record per-line disposition and put accepted stock into batches.

    Lines whose stock is already applied are skipped, so calling this again
    with the same payload creates no batch and no movement. The receipt ends
    `completed` when every line is fully received and settled, otherwise
    `partial`. Every line is checked before anything is written and the
    writes run in one savepoint, so a failure leaves the receipt unchanged.
    """
    pr = get_receipt(db, receipt_id, lock=True)
    if _status(pr) not in RECEIVABLE_STATUSES:
        raise InvalidStateTransition(_status(pr), "receive goods for")
    if not payload.lines:
        raise InvalidRequest("No receipt lines given")

    items: Dict[int, PurchaseReceiptItem] = {
        it.id: it for it in _lock_items(db, pr.id)
    }

    # validate every line before anything is written
    for ln in payload.lines:
        it = items.get(ln.item_id)
        if it is None:
            raise NotFound("Purchase receipt item", ln.item_id)
        if not it.stock_updated:
            _validate_disposition(it, ln)

    with db.begin_nested():
        _apply_delivery(pr, payload)
        pr.received_by = user_id
        if payload.quality_notes is not None:
            pr.quality_notes = payload.quality_notes

        now = now_local()
        for ln in payload.lines:
            it = items[ln.item_id]
            if it.stock_updated:
                logger.info("Receipt %s line %s already in stock, skipped",
                            pr.receipt_number, it.id)
                continue

            accepted = qty4(ln.accepted_quantity)
            rejected = qty4(ln.rejected_quantity)
            damaged = qty4(ln.damaged_quantity)

            it.received_quantity = qty4(ln.received_quantity)
            it.accepted_quantity = accepted
            it.rejected_quantity = rejected
            it.damaged_quantity = damaged
            it.batch_number = (ln.batch_number or "").strip() or it.batch_number
            it.lot_number = (ln.lot_number or "").strip() or it.lot_number
            it.manufacture_date = ln.manufacture_date or it.manufacture_date
            it.expiry_date = ln.expiry_date or it.expiry_date
            it.quality_status = ln.quality_status or _derive_quality(
                accepted, rejected, damaged)
            if ln.quality_notes is not None:
                it.quality_notes = ln.quality_notes
            if ln.receipt_notes is not None:
                it.receipt_notes = ln.receipt_notes

            if rejected > 0 or damaged > 0:
                pr.quality_check = True

            if accepted <= 0:
                continue

            batch, _mv = receive_stock(
                db,
                product_id=it.product_id,
                quantity=accepted,
                cost_price=it.unit_price,
                batch_number=it.batch_number or f"{pr.receipt_number}-{it.id}",
                lot_number=it.lot_number,
                supplier_id=pr.supplier_id,
                manufacture_date=it.manufacture_date,
                expiry_date=it.expiry_date,
                received_date=pr.received_date,
                reference_type=REF_RECEIPT_ITEM,
                reference_id=it.id,
                user_id=user_id,
                notes=f"Receipt {pr.receipt_number}",
            )
            it.batch_id = batch.id
            it.stock_updated = True
            it.stock_updated_at = now

        target = S.completed if _is_complete(list(items.values())) else S.partial
        _change_status(pr, target, "receive goods for")
    db.flush()
    return pr


def verify_receipt(db: Session,
                   receipt_id: int,
                   *,
                   user_id: Optional[int] = None,
                   notes: Optional[str] = None) -> PurchaseReceipt:
    """
    Close a received/partial receipt, accepting short deliveries.
    Every line must be settled first.
    """
    pr = get_receipt(db, receipt_id, lock=True)
    if _status(pr) not in {S.received, S.partial}:
        raise InvalidStateTransition(_status(pr), "verify")

    waiting = [it.id for it in _lock_items(db, pr.id) if not it.is_settled]
    if waiting:
        raise InvalidStateTransition(
            _status(pr), "verify",
            f"Receipt {pr.receipt_number} still has lines awaiting goods: {waiting}")

    _change_status(pr, S.completed, "verify")
    pr.verified_by = user_id
    pr.verified_at = now_local()
    if notes:
        pr.quality_notes = notes
    db.flush()
    return pr


def cancel_receipt(db: Session,
                   receipt_id: int,
                   *,
                   user_id: Optional[int] = None,
                   reason: str = "") -> PurchaseReceipt:
    """
    Cancel from any state except completed/cancelled.

    Lines already put into stock are taken back out with a compensating
    ADJUSTMENT (OUT) movement on their batch. If any of that stock has been
    issued meanwhile the cancel fails with InsufficientStock and nothing is
    changed.
    """
    pr = get_receipt(db, receipt_id, lock=True)
    if not can_transition(_status(pr), S.cancelled):
        raise InvalidStateTransition(_status(pr), "cancel")

    applied = [
        it for it in _lock_items(db, pr.id)
        if it.stock_updated and it.stock_reversed_at is None and it.batch_id
    ]

    needed: Dict[int, Decimal] = defaultdict(lambda: ZERO)
    for it in applied:
        needed[it.batch_id] += qty4(it.accepted_quantity)

    for batch_id, qty in needed.items():
        batch = get_batch(db, batch_id, lock=True)
        if qty4(batch.available_quantity) < qty:
            raise InsufficientStock(
                f"Cannot cancel receipt {pr.receipt_number}: batch {batch_id} has "
                f"{qty4(batch.available_quantity)} left of {qty} received",
                product_id=batch.product_id,
                requested=qty,
                available=qty4(batch.available_quantity),
            )

    now = now_local()
    for it in applied:
        adjust_quantity(
            db,
            it.batch_id,
            -qty4(it.accepted_quantity),
            user_id=user_id,
            notes=f"Cancel receipt {pr.receipt_number}",
            reference_type=REF_RECEIPT_CANCEL,
            reference_id=it.id,
        )
        it.stock_reversed_at = now

    _change_status(pr, S.cancelled, "cancel")
    pr.cancelled_by = user_id
    pr.cancelled_at = now
    pr.cancel_reason = (reason or "").strip() or None
    db.flush()
    return pr


# ============================================================
# Listing
# ============================================================
def search_receipts(
    db: Session,
    *,
    q: Optional[str] = None,
    supplier_id: Optional[int] = None,
    status: Optional[Union[ReceiptStatus, str]] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    created_by: Optional[int] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[PurchaseReceipt], int]:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or 20), 1), 200)

    query = db.query(PurchaseReceipt)
    text = (q or "").strip()
    if text:
        like = f"%{text}%"
        query = query.filter(
            or_(
                PurchaseReceipt.receipt_number.ilike(like),
                PurchaseReceipt.invoice_number.ilike(like),
                PurchaseReceipt.delivery_note.ilike(like),
                PurchaseReceipt.reference.ilike(like),
                PurchaseReceipt.order_notes.ilike(like),
                PurchaseReceipt.receipt_notes.ilike(like),
            ))
    if supplier_id is not None:
        query = query.filter(PurchaseReceipt.supplier_id == supplier_id)
    if status:
        query = query.filter(PurchaseReceipt.status == resolve_status(status))
    if date_from is not None:
        query = query.filter(PurchaseReceipt.created_at >= day_start(date_from))
    if date_to is not None:
        query = query.filter(
            PurchaseReceipt.created_at < day_end_exclusive(date_to))
    if created_by is not None:
        query = query.filter(PurchaseReceipt.created_by == created_by)

    total = query.count()
    rows = (query.options(selectinload(PurchaseReceipt.items)).order_by(
        PurchaseReceipt.created_at.desc(),
        PurchaseReceipt.id.desc()).offset(
            (page - 1) * page_size).limit(page_size).all())
    return rows, total
