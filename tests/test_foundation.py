import logging
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from inventory_core.core.config import settings
from inventory_core.core.exceptions import InvalidStateTransition, NotFound
from inventory_core.core.logging import setup_logging
from inventory_core.db.session import get_db, init_db, make_engine
from inventory_core.models.purchase_receipt import ReceiptStatus
from inventory_core.services.number_series import (
    next_document_number,
    next_receipt_number,
)
from inventory_core.utils.decimals import D, cost4, money2, pct_of, qty4


class TestDecimals:

    def test_rounding_is_half_up(self):
        assert money2("2.345") == Decimal("2.35")
        assert money2("-2.345") == Decimal("-2.35")
        assert cost4("0.00005") == Decimal("0.0001")
        assert qty4(3) == Decimal("3.0000")

    def test_bad_input_falls_back_to_default(self):
        assert D(None) == Decimal("0")
        assert D("n/a", "1") == Decimal("1")
        assert D(" 7.5 ") == Decimal("7.5")

    def test_non_finite_values_fall_back_to_default(self):
        assert D("NaN") == Decimal("0")
        assert D(float("inf"), "1") == Decimal("1")
        assert D(Decimal("-Infinity")) == Decimal("0")
        assert qty4("sNaN") == Decimal("0.0000")

    def test_percentage(self):
        assert pct_of("112.50", "5") == Decimal("5.63")


class TestNumberSeries:

    def test_counter_runs_per_key_and_day(self, db):
        d1, d2 = date(2031, 3, 1), date(2031, 3, 2)

        assert next_document_number(db, "PR", "PR", d1) == "PR203103010001"
        assert next_document_number(db, "PR", "PR", d1) == "PR203103010002"
        assert next_document_number(db, "PR", "PR", d2) == "PR203103020001"
        assert next_document_number(db, "GRN", "GRN", d1, pad=6) == "GRN20310301000001"

    def test_receipt_number_uses_configured_prefix(self, db):
        number = next_receipt_number(db, date(2031, 3, 1))
        assert number == f"{settings.RECEIPT_NUMBER_PREFIX}20310301" + "1".zfill(
            settings.RECEIPT_NUMBER_PAD)


class TestSetup:

    def test_init_db_creates_every_table(self, tmp_path):
        eng = make_engine(f"sqlite:///{tmp_path / 'fresh.db'}", echo=False)
        try:
            init_db(eng)
            tables = set(inspect(eng).get_table_names())
        finally:
            eng.dispose()

        assert {
            "stock_batches",
            "stock_movements",
            "purchase_receipts",
            "purchase_receipt_items",
            "number_series",
        } <= tables

    def test_get_db_yields_and_closes_a_session(self):
        gen = get_db()
        session = next(gen)
        assert isinstance(session, Session)
        with pytest.raises(StopIteration):
            next(gen)

    def test_setup_logging_quiets_engine_logger(self):
        engine_logger = logging.getLogger("sqlalchemy.engine")
        previous = engine_logger.level
        try:
            setup_logging("DEBUG")
            if not settings.SQL_ECHO:
                assert engine_logger.level == logging.WARNING
        finally:
            engine_logger.setLevel(previous)


class TestErrors:

    def test_state_error_carries_status_value(self):
        err = InvalidStateTransition(ReceiptStatus.completed, "cancel")
        assert err.current == "completed"
        assert "cancel" in str(err)

    def test_not_found_message(self):
        err = NotFound("Stock batch", 5)
        assert str(err) == "Stock batch 5 not found"
