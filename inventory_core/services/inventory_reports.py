# inventory_core/services/inventory_reports.py
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Query, Session, selectinload

from inventory_core.models.purchase_receipt import (
    PurchaseReceipt,
    PurchaseReceiptItem,
    ReceiptStatus,
)
from inventory_core.models.stock import StockBatch
from inventory_core.schemas.inventory import (
    BatchUtilizationOut,
    InventoryValuationOut,
    ProductBatchSummaryOut,
    ReceiptSummaryOut,
    SupplierPerformanceOut,
    TopSupplierOut,
    ValuationRowOut,
)
from inventory_core.services.inventory_summary import stock_levels
from inventory_core.utils.decimals import D, HUNDRED, ZERO, cost4, money2, qty4
from inventory_core.utils.timezone import day_end_exclusive, day_start, today_local

AWAITING_GOODS = (ReceiptStatus.ordered, ReceiptStatus.received,
                  ReceiptStatus.partial)


def _pct(part, whole) -> Decimal:
    whole = D(whole)
    if whole <= 0:
        return ZERO
    return money2(D(part) * HUNDRED / whole)


def _receipts_between(q: Query, date_from: Optional[date],
                      date_to: Optional[date]) -> Query:
    if date_from is not None:
        q = q.filter(PurchaseReceipt.created_at >= day_start(date_from))
    if date_to is not None:
        q = q.filter(PurchaseReceipt.created_at < day_end_exclusive(date_to))
    return q


# ============================================================
# Receipts / suppliers
# ============================================================
def receipt_summary(db: Session,
                    date_from: Optional[date] = None,
                    date_to: Optional[date] = None) -> ReceiptSummaryOut:
    q = _receipts_between(
        db.query(PurchaseReceipt.status, func.count(PurchaseReceipt.id),
                 func.coalesce(func.sum(PurchaseReceipt.total_amount), 0)),
        date_from, date_to)
    rows = q.group_by(PurchaseReceipt.status).all()

    out = ReceiptSummaryOut(date_from=date_from, date_to=date_to)
    for status, cnt, value in rows:
        st = ReceiptStatus(status)
        out.by_status[st.value] = int(cnt)
        out.total_receipts += int(cnt)
        if st != ReceiptStatus.cancelled:
            out.total_value += D(value)
        if st == ReceiptStatus.completed:
            out.completed_value += D(value)
        if st in AWAITING_GOODS:
            out.pending_count += int(cnt)

    out.total_value = money2(out.total_value)
    out.completed_value = money2(out.completed_value)
    return out


def supplier_performance(db: Session,
                         supplier_id: int,
                         date_from: Optional[date] = None,
                         date_to: Optional[date] = None) -> SupplierPerformanceOut:
    """
    acceptance_rate = accepted / received, delivery_rate = completed / receipts.
    A delivery is on time when it arrived on or before the expected date.
    """
    receipts = _receipts_between(
        db.query(PurchaseReceipt).options(selectinload(
            PurchaseReceipt.items)).filter(
                PurchaseReceipt.supplier_id == supplier_id), date_from,
        date_to).all()

    out = SupplierPerformanceOut(supplier_id=supplier_id)
    live = 0
    for pr in receipts:
        out.total_receipts += 1
        st = ReceiptStatus(pr.status)
        if st == ReceiptStatus.cancelled:
            out.cancelled_receipts += 1
            continue
        live += 1
        if st == ReceiptStatus.completed:
            out.completed_receipts += 1
        out.total_order_value += D(pr.total_amount)

        for it in pr.items:
            out.total_ordered += D(it.ordered_quantity)
            out.total_received += D(it.received_quantity)
            out.total_accepted += D(it.accepted_quantity)
            out.total_rejected += D(it.rejected_quantity)
            out.total_damaged += D(it.damaged_quantity)

        if pr.received_date and pr.expected_date:
            if pr.received_date <= pr.expected_date:
                out.on_time_deliveries += 1
            else:
                out.late_deliveries += 1

    out.total_order_value = money2(out.total_order_value)
    out.average_order_value = money2(out.total_order_value /
                                     live) if live else ZERO
    for field in ("total_ordered", "total_received", "total_accepted",
                  "total_rejected", "total_damaged"):
        setattr(out, field, qty4(getattr(out, field)))
    out.acceptance_rate = _pct(out.total_accepted, out.total_received)
    out.delivery_rate = _pct(out.completed_receipts, out.total_receipts)
    return out


def top_suppliers(db: Session,
                  limit: int = 10,
                  date_from: Optional[date] = None,
                  date_to: Optional[date] = None) -> List[TopSupplierOut]:
    total = func.coalesce(func.sum(PurchaseReceipt.total_amount), 0)
    q = _receipts_between(
        db.query(PurchaseReceipt.supplier_id, func.count(PurchaseReceipt.id),
                 total).filter(
                     PurchaseReceipt.status != ReceiptStatus.cancelled),
        date_from, date_to)
    rows = (q.group_by(PurchaseReceipt.supplier_id).order_by(
        total.desc(), PurchaseReceipt.supplier_id.asc()).limit(
            max(int(limit), 1)).all())
    return [
        TopSupplierOut(supplier_id=sid,
                       receipt_count=int(cnt),
                       total_value=money2(D(value))) for sid, cnt, value in rows
    ]


def pending_receipts(db: Session,
                     supplier_id: Optional[int] = None) -> List[PurchaseReceipt]:
    """Receipts sent to the supplier whose goods are not all in yet."""
    q = db.query(PurchaseReceipt).options(selectinload(
        PurchaseReceipt.items)).filter(
            PurchaseReceipt.status.in_(AWAITING_GOODS))
    if supplier_id is not None:
        q = q.filter(PurchaseReceipt.supplier_id == supplier_id)
    return q.order_by(PurchaseReceipt.expected_date.is_(None).asc(),
                      PurchaseReceipt.expected_date.asc(),
                      PurchaseReceipt.id.asc()).all()


def receipt_line_totals(db: Session, receipt_id: int) -> dict:
    row = db.query(
        func.coalesce(func.sum(PurchaseReceiptItem.ordered_quantity), 0),
        func.coalesce(func.sum(PurchaseReceiptItem.received_quantity), 0),
        func.coalesce(func.sum(PurchaseReceiptItem.accepted_quantity), 0),
        func.coalesce(func.sum(PurchaseReceiptItem.rejected_quantity), 0),
        func.coalesce(func.sum(PurchaseReceiptItem.damaged_quantity), 0),
    ).filter(PurchaseReceiptItem.receipt_id == receipt_id).one()
    keys = ("ordered", "received", "accepted", "rejected", "damaged")
    return {k: qty4(D(v)) for k, v in zip(keys, row)}


# ============================================================
# Batches / valuation
# ============================================================
def batch_utilization(db: Session,
                      product_id: Optional[int] = None) -> List[BatchUtilizationOut]:
    q = db.query(StockBatch).filter(StockBatch.is_active.is_(True))
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)

    out = []
    for b in q.order_by(StockBatch.received_date.asc(), StockBatch.id.asc()):
        qty = qty4(b.quantity)
        avail = qty4(b.available_quantity)
        consumed = qty - avail
        out.append(
            BatchUtilizationOut(
                batch_id=b.id,
                product_id=b.product_id,
                batch_number=b.batch_number,
                quantity=qty,
                available_quantity=avail,
                consumed_quantity=consumed,
                utilization_percent=_pct(consumed, qty),
            ))
    return out


def product_batch_summary(db: Session,
                          product_id: int,
                          today: Optional[date] = None) -> ProductBatchSummaryOut:
    today = today or today_local()
    batches = db.query(StockBatch).filter(
        StockBatch.product_id == product_id).all()

    out = ProductBatchSummaryOut(product_id=product_id,
                                 total_batches=len(batches))
    for b in batches:
        if not b.is_active:
            continue
        out.active_batches += 1
        if b.is_expired(today):
            out.expired_batches += 1
        out.total_quantity += D(b.quantity)
        out.available_quantity += D(b.available_quantity)
        out.total_value += D(b.cost_price) * D(b.available_quantity)
        if out.oldest_received is None or b.received_date < out.oldest_received:
            out.oldest_received = b.received_date
        if b.expiry_date and b.available_quantity > 0 and (
                out.nearest_expiry is None or b.expiry_date < out.nearest_expiry):
            out.nearest_expiry = b.expiry_date

    out.total_quantity = qty4(out.total_quantity)
    out.available_quantity = qty4(out.available_quantity)
    out.total_value = cost4(out.total_value)
    if out.available_quantity > 0:
        out.weighted_average_cost = cost4(out.total_value /
                                          out.available_quantity)
    return out


def inventory_valuation(
        db: Session,
        product_ids: Optional[Iterable[int]] = None) -> InventoryValuationOut:
    """Value of available stock at batch cost, per product and overall."""
    out = InventoryValuationOut()
    for lv in stock_levels(db, product_ids):
        if lv.available <= 0:
            continue
        out.rows.append(
            ValuationRowOut(
                product_id=lv.product_id,
                available_quantity=lv.available,
                total_value=lv.total_value,
                weighted_average_cost=lv.weighted_average_cost,
            ))
        out.total_quantity += lv.available
        out.total_value += lv.total_value

    out.total_quantity = qty4(out.total_quantity)
    out.total_value = cost4(out.total_value)
    return out
