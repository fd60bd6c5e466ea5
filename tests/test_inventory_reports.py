from datetime import date, timedelta
from decimal import Decimal

import pytest

from inventory_core.models.purchase_receipt import ReceiptStatus
from inventory_core.schemas.purchase_receipt import (
    ReceiptCreate,
    ReceiptItemIn,
    ReceiveGoodsIn,
    ReceiveLineIn,
)
from inventory_core.services.allocation import allocate_stock
from inventory_core.services.batch_store import deactivate
from inventory_core.services.inventory_reports import (
    batch_utilization,
    inventory_valuation,
    pending_receipts,
    product_batch_summary,
    receipt_line_totals,
    receipt_summary,
    supplier_performance,
    top_suppliers,
)
from inventory_core.services.inventory_summary import (
    low_stock_products,
    stock_level,
    stock_levels,
    weighted_average_cost,
)
from inventory_core.services.purchase_receipt_service import (
    cancel_receipt,
    create_receipt,
    receive_goods,
)
from inventory_core.utils.timezone import today_local

D0 = date(2031, 3, 1)


@pytest.fixture
def stocked(db, make_batch):
    """Product 1: A 10 @ 2.00 (5 issued), B 10 @ 4.00, one retired batch.
    Product 2: 3 @ 1.00."""
    a = make_batch(product_id=1,
                   quantity=10,
                   cost_price="2.00",
                   batch_number="A",
                   received_date=D0)
    b = make_batch(product_id=1,
                   quantity=10,
                   cost_price="4.00",
                   batch_number="B",
                   received_date=D0 + timedelta(days=1),
                   expiry_date=D0 + timedelta(days=40))
    retired = make_batch(product_id=1, quantity=100, received_date=D0)
    deactivate(db, retired.id)
    allocate_stock(db, product_id=1, quantity=5, policy="FIFO")
    make_batch(product_id=2, quantity=3, cost_price="1.00", received_date=D0)
    return a, b


class TestStockLevels:

    def test_level_is_derived_from_active_batches(self, db, stocked):
        lv = stock_level(db, 1, reorder_level=25)

        assert lv.on_hand == Decimal("20")
        assert lv.available == Decimal("15")
        assert lv.allocated == Decimal("5")
        assert lv.batch_count == 2
        assert lv.total_value == Decimal("50")
        assert lv.weighted_average_cost == Decimal("3.3333")
        assert lv.is_low_stock is True

    def test_product_without_batches(self, db):
        lv = stock_level(db, 42)
        assert lv.on_hand == Decimal("0")
        assert lv.is_low_stock is False

    def test_low_stock_uses_catalog_thresholds(self, db, stocked):
        levels = {1: 5, 2: 5, 3: 1}

        assert [lv.product_id for lv in stock_levels(db, reorder_levels=levels)
                ] == [1, 2, 3]
        assert [lv.product_id for lv in low_stock_products(db, levels)] == [2, 3]

    def test_weighted_average_cost(self, db, stocked):
        assert weighted_average_cost(db, 1) == Decimal("3.3333")
        assert weighted_average_cost(db, 99) == Decimal("0")


class TestBatchReports:

    def test_valuation(self, db, stocked):
        val = inventory_valuation(db)

        assert [r.product_id for r in val.rows] == [1, 2]
        assert val.total_quantity == Decimal("18")
        assert val.total_value == Decimal("53")

    def test_utilization(self, db, stocked):
        a, b = stocked
        rows = {r.batch_id: r for r in batch_utilization(db, product_id=1)}

        assert set(rows) == {a.id, b.id}
        assert rows[a.id].consumed_quantity == Decimal("5")
        assert rows[a.id].utilization_percent == Decimal("50.00")
        assert rows[b.id].utilization_percent == Decimal("0")

    def test_product_summary(self, db, stocked):
        s = product_batch_summary(db, 1, today=D0)

        assert s.total_batches == 3
        assert s.active_batches == 2
        assert s.expired_batches == 0
        assert s.available_quantity == Decimal("15")
        assert s.total_value == Decimal("50")
        assert s.oldest_received == D0
        assert s.nearest_expiry == D0 + timedelta(days=40)


def _receipt(db, supplier_id, qty, price, **header):
    return create_receipt(
        db,
        ReceiptCreate(supplier_id=supplier_id,
                      items=[
                          ReceiptItemIn(product_id=10,
                                        ordered_quantity=Decimal(qty),
                                        unit_price=Decimal(price))
                      ],
                      **header))


@pytest.fixture
def receipts(db, ordered_receipt):
    done = ordered_receipt(supplier_id=7,
                           lines=((10, 100, "10.00"),),
                           expected_date=date(2099, 1, 1))
    item = done.items[0]
    receive_goods(
        db, done.id,
        ReceiveGoodsIn(lines=[
            ReceiveLineIn(item_id=item.id,
                          received_quantity=Decimal("100"),
                          accepted_quantity=Decimal("90"),
                          rejected_quantity=Decimal("10"))
        ]))

    dropped = ordered_receipt(supplier_id=7, lines=((10, 50, "2.00"),))
    cancel_receipt(db, dropped.id, reason="duplicate order")

    draft = _receipt(db, 7, "10", "1.00")
    waiting = ordered_receipt(supplier_id=8, lines=((11, 5, "1.00"),))
    return done, dropped, draft, waiting


class TestReceiptReports:

    def test_summary(self, db, receipts):
        s = receipt_summary(db)

        assert s.total_receipts == 4
        assert s.by_status == {
            "completed": 1,
            "cancelled": 1,
            "draft": 1,
            "ordered": 1,
        }
        assert s.total_value == Decimal("1015.00")
        assert s.completed_value == Decimal("1000.00")
        assert s.pending_count == 1

    def test_summary_date_range(self, db, receipts):
        tomorrow = today_local() + timedelta(days=1)
        assert receipt_summary(db, date_from=tomorrow).total_receipts == 0
        assert receipt_summary(db, date_to=today_local()).total_receipts == 4

    def test_supplier_performance(self, db, receipts):
        perf = supplier_performance(db, 7)

        assert perf.total_receipts == 3
        assert perf.completed_receipts == 1
        assert perf.cancelled_receipts == 1
        assert perf.total_order_value == Decimal("1010.00")
        assert perf.average_order_value == Decimal("505.00")
        assert perf.total_ordered == Decimal("110")
        assert perf.total_received == Decimal("100")
        assert perf.total_accepted == Decimal("90")
        assert perf.total_rejected == Decimal("10")
        assert perf.acceptance_rate == Decimal("90.00")
        assert perf.delivery_rate == Decimal("33.33")
        assert perf.on_time_deliveries == 1
        assert perf.late_deliveries == 0

    def test_top_suppliers_ignore_cancelled(self, db, receipts):
        top = top_suppliers(db)

        assert [(t.supplier_id, t.receipt_count) for t in top] == [(7, 2), (8, 1)]
        assert top[0].total_value == Decimal("1010.00")

    def test_pending_receipts(self, db, receipts):
        _done, _dropped, _draft, waiting = receipts
        assert [pr.id for pr in pending_receipts(db)] == [waiting.id]
        assert pending_receipts(db, supplier_id=7) == []
        assert waiting.status == ReceiptStatus.ordered

    def test_line_totals(self, db, receipts):
        done = receipts[0]
        assert receipt_line_totals(db, done.id) == {
            "ordered": Decimal("100"),
            "received": Decimal("100"),
            "accepted": Decimal("90"),
            "rejected": Decimal("10"),
            "damaged": Decimal("0"),
        }
