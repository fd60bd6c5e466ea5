"""
Race safety: real threads, separate sessions, one SQLite file.

Each worker waits on a barrier so the requests hit the database together.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest

from inventory_core.core.exceptions import InsufficientStock
from inventory_core.models.stock import StockBatch, StockMovement
from inventory_core.schemas.purchase_receipt import ReceiptCreate
from inventory_core.services.allocation import allocate_stock
from inventory_core.services.batch_store import create_batch
from inventory_core.services.purchase_receipt_service import create_receipt

pytestmark = pytest.mark.concurrency


def _run_parallel(n, work):
    barrier = Barrier(n)

    def _worker(i):
        barrier.wait()
        return work(i)

    with ThreadPoolExecutor(max_workers=n) as pool:
        futures = [pool.submit(_worker, i) for i in range(n)]
        return [f.result() for f in futures]


def _allocator(session_factory, quantity):

    def _allocate(_i):
        session = session_factory()
        try:
            allocate_stock(session, product_id=1, quantity=quantity)
            session.commit()
            return "ok"
        except InsufficientStock:
            session.rollback()
            return "short"
        finally:
            session.close()

    return _allocate


def _seed_batch(session_factory, quantity):
    session = session_factory()
    try:
        batch = create_batch(session,
                             product_id=1,
                             quantity=quantity,
                             cost_price=Decimal("1.00"))
        session.commit()
        return batch.id
    finally:
        session.close()


class TestConcurrentAllocation:

    def test_two_requests_cannot_overdraw_one_batch(self, session_factory):
        batch_id = _seed_batch(session_factory, 10)

        results = _run_parallel(2, _allocator(session_factory, 6))

        assert sorted(results) == ["ok", "short"]
        check = session_factory()
        try:
            assert check.get(StockBatch, batch_id).available_quantity == Decimal("4")
            assert check.query(StockMovement).count() == 1
        finally:
            check.close()

    def test_many_small_requests_drain_exactly(self, session_factory):
        batch_id = _seed_batch(session_factory, 5)

        results = _run_parallel(8, _allocator(session_factory, 1))

        assert results.count("ok") == 5
        assert results.count("short") == 3
        check = session_factory()
        try:
            assert check.get(StockBatch, batch_id).available_quantity == Decimal("0")
            issued = sum(m.quantity for m in check.query(StockMovement))
            assert issued == Decimal("5")
        finally:
            check.close()


class TestConcurrentNumbering:

    def test_receipt_numbers_stay_unique(self, session_factory):

        def _create(i):
            session = session_factory()
            try:
                pr = create_receipt(session, ReceiptCreate(supplier_id=i + 1))
                session.commit()
                return pr.receipt_number
            finally:
                session.close()

        numbers = _run_parallel(4, _create)

        assert len(set(numbers)) == 4
