from decimal import Decimal

import pytest

from inventory_core.core.exceptions import (
    InvalidQuantity,
    InvalidRequest,
    LedgerImmutableError,
)
from inventory_core.models.stock import MovementType, StockDirection, StockMovement
from inventory_core.services.stock_ledger import (
    count_movements,
    direction_for,
    ledger_balance,
    list_movements,
    movement_totals_by_type,
    record_movement,
)


class TestRecordMovement:

    def test_total_cost_is_fixed_at_write(self, db, make_batch):
        b = make_batch()
        mv = record_movement(db,
                             product_id=1,
                             batch_id=b.id,
                             movement_type=MovementType.IN,
                             quantity=4,
                             unit_cost="2.5")

        assert mv.id is not None
        assert mv.direction == StockDirection.IN
        assert mv.total_cost == Decimal("10.0000")
        assert mv.created_at is not None

    def test_quantity_must_be_positive(self, db):
        with pytest.raises(InvalidQuantity):
            record_movement(db, product_id=1, movement_type="OUT", quantity=0)

    @pytest.mark.parametrize("qty", ["NaN", "-Infinity", float("inf")])
    def test_non_finite_quantity_is_rejected(self, db, qty):
        with pytest.raises(InvalidQuantity):
            record_movement(db, product_id=1, movement_type="IN", quantity=qty)

    def test_unknown_type_and_direction_are_rejected(self, db):
        with pytest.raises(InvalidRequest):
            record_movement(db, product_id=1, movement_type="GIFT", quantity=1)
        with pytest.raises(InvalidRequest):
            direction_for(MovementType.ADJUSTMENT, "SIDEWAYS")
        with pytest.raises(InvalidRequest):
            list_movements(db, movement_type="GIFT")
        assert count_movements(db) == 0

    def test_unit_cost_cannot_be_negative(self, db):
        with pytest.raises(InvalidRequest):
            record_movement(db,
                            product_id=1,
                            movement_type="IN",
                            quantity=1,
                            unit_cost=-1)

    def test_adjustment_needs_a_direction(self):
        with pytest.raises(InvalidRequest):
            direction_for(MovementType.ADJUSTMENT)
        assert direction_for(MovementType.ADJUSTMENT, "OUT") == StockDirection.OUT

    def test_fixed_direction_types_cannot_be_flipped(self):
        assert direction_for(MovementType.RETURN) == StockDirection.IN
        with pytest.raises(InvalidRequest):
            direction_for(MovementType.SALE, StockDirection.IN)


class TestImmutability:

    def test_update_is_blocked(self, db):
        mv = record_movement(db, product_id=1, movement_type="IN", quantity=3)
        mv.quantity = Decimal("30")
        with pytest.raises(LedgerImmutableError):
            db.flush()
        db.rollback()

    def test_delete_is_blocked(self, db):
        mv = record_movement(db, product_id=1, movement_type="IN", quantity=3)
        db.commit()

        db.delete(mv)
        with pytest.raises(LedgerImmutableError):
            db.flush()
        db.rollback()
        assert db.query(StockMovement).count() == 1


class TestQueries:

    @pytest.fixture
    def history(self, db):
        record_movement(db, product_id=1, movement_type="IN", quantity=10,
                        unit_cost=2, user_id=1)
        record_movement(db, product_id=1, movement_type="SALE", quantity=3,
                        unit_cost=2, user_id=2, reference_type="sale",
                        reference_id=1)
        record_movement(db, product_id=1, movement_type="DAMAGE", quantity=1,
                        unit_cost=2, user_id=2)
        record_movement(db, product_id=1, movement_type="ADJUSTMENT",
                        direction="IN", quantity=2, unit_cost=2)
        record_movement(db, product_id=2, movement_type="IN", quantity=5)

    def test_balance_is_signed_net(self, db, history):
        assert ledger_balance(db, 1) == Decimal("8")
        assert ledger_balance(db, 2) == Decimal("5")
        assert ledger_balance(db, 3) == Decimal("0")

    def test_filters(self, db, history):
        assert count_movements(db, product_id=1) == 4
        assert count_movements(db, user_id=2) == 2
        assert count_movements(db, movement_type=MovementType.SALE) == 1
        assert count_movements(db, reference_type="sale", reference_id=1) == 1

    def test_listing_is_newest_first_and_paginated(self, db, history):
        rows, total = list_movements(db, product_id=1, page=1, page_size=3)
        assert total == 4
        assert len(rows) == 3
        ids = [m.id for m in rows]
        assert ids == sorted(ids, reverse=True)

        rest, _ = list_movements(db, product_id=1, page=2, page_size=3)
        assert len(rest) == 1

    def test_totals_by_type(self, db, history):
        totals = movement_totals_by_type(db, 1)
        assert totals["IN"] == {
            "quantity": Decimal("10"),
            "total_cost": Decimal("20"),
        }
        assert totals["SALE"]["quantity"] == Decimal("3")
        assert "RETURN" not in totals
