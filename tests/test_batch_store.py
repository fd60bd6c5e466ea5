from datetime import date, timedelta
from decimal import Decimal

import pytest

from inventory_core.core.exceptions import (
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    NotFound,
)
from inventory_core.models.stock import MovementType, StockBatch, StockDirection
from inventory_core.services.allocation import allocate_stock
from inventory_core.services.batch_store import (
    REF_BATCH_ADJUSTMENT,
    adjust_quantity,
    batches_by_lot_number,
    batches_for_product,
    batches_for_supplier,
    create_batch,
    create_batches_bulk,
    expired_batches,
    expiring_batches,
    get_batch,
    receive_stock,
    release,
    remove_batch,
    reserve,
    search_batches,
    validate_batch_for_sale,
)
from inventory_core.services.stock_ledger import movements_for_reference
from inventory_core.utils.timezone import today_local

D0 = date(2031, 3, 1)


class TestCreateBatch:

    def test_new_batch_is_fully_available(self, db):
        b = create_batch(db,
                         product_id=1,
                         quantity=Decimal("12.5"),
                         cost_price=Decimal("3.10"),
                         batch_number="  LOT-A  ",
                         supplier_id=4)

        assert b.id is not None
        assert b.available_quantity == b.quantity == Decimal("12.5")
        assert b.batch_number == "LOT-A"
        assert b.is_active
        assert b.received_date == today_local()

    @pytest.mark.parametrize("qty", [0, -1])
    def test_quantity_must_be_positive(self, db, qty):
        with pytest.raises(InvalidQuantity):
            create_batch(db, product_id=1, quantity=qty, cost_price=1)

    def test_negative_cost_is_rejected(self, db):
        with pytest.raises(InvalidRequest):
            create_batch(db, product_id=1, quantity=1, cost_price=-1)

    def test_expiry_before_manufacture_is_rejected(self, db):
        with pytest.raises(InvalidRequest):
            create_batch(db,
                         product_id=1,
                         quantity=1,
                         cost_price=1,
                         manufacture_date=D0,
                         expiry_date=D0 - timedelta(days=1))

    def test_bulk_create_accepts_dicts(self, db):
        rows = create_batches_bulk(db, [
            {"product_id": 1, "quantity": 3, "cost_price": "1.00"},
            {"product_id": 2, "quantity": 4, "cost_price": "2.00"},
        ])
        assert [b.product_id for b in rows] == [1, 2]

    def test_cost_price_is_frozen(self, db, make_batch):
        b = make_batch(cost_price="2.50")
        b.cost_price = Decimal("9.99")
        with pytest.raises(InvalidRequest):
            db.flush()
        db.rollback()

    def test_unknown_batch(self, db):
        with pytest.raises(NotFound):
            get_batch(db, 12345)


class TestReserveRelease:

    def test_reserve_and_release(self, db, make_batch):
        b = make_batch(quantity=10)

        reserve(db, b.id, 4)
        assert get_batch(db, b.id).available_quantity == Decimal("6")

        release(db, b.id, 3)
        assert get_batch(db, b.id).available_quantity == Decimal("9")

    def test_cannot_reserve_more_than_available(self, db, make_batch):
        b = make_batch(quantity=10)
        with pytest.raises(InsufficientStock) as exc_info:
            reserve(db, b.id, 11)
        assert exc_info.value.available == Decimal("10")
        assert get_batch(db, b.id).available_quantity == Decimal("10")

    def test_cannot_release_above_quantity(self, db, make_batch):
        b = make_batch(quantity=10)
        reserve(db, b.id, 2)
        with pytest.raises(InsufficientStock):
            release(db, b.id, 3)
        assert get_batch(db, b.id).available_quantity == Decimal("8")


class TestAdjustQuantity:

    def test_positive_adjustment_writes_incoming_movement(self, db, make_batch):
        b = make_batch(quantity=10, cost_price="1.50")

        adjust_quantity(db, b.id, 5, user_id=3, notes="count")

        assert b.quantity == Decimal("15")
        assert b.available_quantity == Decimal("15")
        (mv,) = movements_for_reference(db, REF_BATCH_ADJUSTMENT, b.id)
        assert mv.movement_type == MovementType.ADJUSTMENT
        assert mv.direction == StockDirection.IN
        assert mv.quantity == Decimal("5")
        assert mv.total_cost == Decimal("7.5000")

    def test_negative_adjustment_clamps_available(self, db, make_batch):
        b = make_batch(quantity=10)
        reserve(db, b.id, 6)

        adjust_quantity(db, b.id, -5)

        b = get_batch(db, b.id)
        assert b.quantity == Decimal("5")
        assert b.available_quantity == Decimal("0")
        (mv,) = movements_for_reference(db, REF_BATCH_ADJUSTMENT, b.id)
        assert mv.direction == StockDirection.OUT

    def test_cannot_go_negative(self, db, make_batch):
        b = make_batch(quantity=10)
        with pytest.raises(InsufficientStock):
            adjust_quantity(db, b.id, -11)
        assert get_batch(db, b.id).quantity == Decimal("10")

    def test_zero_delta_is_rejected(self, db, make_batch):
        b = make_batch()
        with pytest.raises(InvalidQuantity):
            adjust_quantity(db, b.id, 0)


class TestRemoveBatch:

    def test_unreferenced_batch_is_deleted(self, db, make_batch):
        b = make_batch()
        assert remove_batch(db, b.id) is True
        assert db.get(StockBatch, b.id) is None

    def test_batch_with_history_is_deactivated(self, db, make_batch):
        b = make_batch(quantity=5)
        allocate_stock(db, product_id=1, quantity=1)

        assert remove_batch(db, b.id) is False
        b = get_batch(db, b.id)
        assert b.is_active is False


class TestReceiveStock:

    def test_identical_batch_is_augmented(self, db):
        first, _ = receive_stock(db,
                                 product_id=1,
                                 quantity=10,
                                 cost_price="5.00",
                                 batch_number="L1",
                                 supplier_id=2,
                                 expiry_date=D0)
        again, mv = receive_stock(db,
                                  product_id=1,
                                  quantity=4,
                                  cost_price="5.00",
                                  batch_number="L1",
                                  supplier_id=2,
                                  expiry_date=D0)

        assert again.id == first.id
        assert again.quantity == Decimal("14")
        assert again.available_quantity == Decimal("14")
        assert mv.movement_type == MovementType.IN
        assert mv.quantity == Decimal("4")

    def test_different_cost_gets_its_own_batch(self, db):
        first, _ = receive_stock(db,
                                 product_id=1,
                                 quantity=10,
                                 cost_price="5.00",
                                 batch_number="L1")
        other, _ = receive_stock(db,
                                 product_id=1,
                                 quantity=10,
                                 cost_price="5.25",
                                 batch_number="L1")
        assert other.id != first.id
        assert len(batches_for_product(db, 1)) == 2

    def test_merge_can_be_disabled(self, db):
        first, _ = receive_stock(db,
                                 product_id=1,
                                 quantity=1,
                                 cost_price=1,
                                 batch_number="L1")
        other, _ = receive_stock(db,
                                 product_id=1,
                                 quantity=1,
                                 cost_price=1,
                                 batch_number="L1",
                                 merge=False)
        assert other.id != first.id


class TestQueries:

    def test_expiring_and_expired(self, db, make_batch):
        soon = make_batch(expiry_date=D0 + timedelta(days=10))
        make_batch(expiry_date=D0 + timedelta(days=90))
        gone = make_batch(expiry_date=D0 - timedelta(days=1))
        make_batch()

        assert [b.id for b in expiring_batches(db, 30, today=D0)] == [soon.id]
        assert [b.id for b in expired_batches(db, today=D0)] == [gone.id]

    def test_lookup_by_lot_and_supplier(self, db, make_batch):
        a = make_batch(lot_number="LOT-9", supplier_id=3)
        make_batch(lot_number="LOT-8", supplier_id=4)

        assert [b.id for b in batches_by_lot_number(db, "LOT-9")] == [a.id]
        assert [b.id for b in batches_for_supplier(db, 3)] == [a.id]

    def test_search_is_paginated(self, db, make_batch):
        for i in range(5):
            make_batch(batch_number=f"ABC-{i}")
        make_batch(batch_number="XYZ")

        rows, total = search_batches(db, q="abc", page=2, page_size=2)

        assert total == 5
        assert len(rows) == 2

    def test_validate_for_sale(self, db, make_batch):
        ok = make_batch(quantity=3)
        expired = make_batch(expiry_date=D0 - timedelta(days=1))

        assert validate_batch_for_sale(db, ok.id, 3, today=D0).id == ok.id
        with pytest.raises(InsufficientStock):
            validate_batch_for_sale(db, ok.id, 4, today=D0)
        with pytest.raises(InsufficientStock):
            validate_batch_for_sale(db, expired.id, 1, today=D0)
