"""
Shared fixtures.

Every test gets its own file-backed SQLite database under tmp_path so the
concurrency tests can open several connections onto the same data.
"""

from decimal import Decimal

import pytest

from inventory_core.db.base import Base
from inventory_core.db.session import make_engine, make_session_factory
from inventory_core.schemas.purchase_receipt import ReceiptCreate, ReceiptItemIn
from inventory_core.services.batch_store import create_batch
from inventory_core.services.purchase_receipt_service import (
    approve_receipt,
    create_receipt,
    send_to_supplier,
)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'inventory.db'}", echo=False)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_batch(db):
    """Create a batch with sensible defaults; keyword overrides win."""

    def _make(product_id=1, quantity=10, cost_price="2.50", **kw):
        return create_batch(db,
                            product_id=product_id,
                            quantity=quantity,
                            cost_price=Decimal(str(cost_price)),
                            **kw)

    return _make


@pytest.fixture
def ordered_receipt(db):
    """Receipt for one product, approved and sent: ready to receive."""

    def _make(supplier_id=7, lines=((1, 100, "10.00"),), **header):
        payload = ReceiptCreate(
            supplier_id=supplier_id,
            items=[
                ReceiptItemIn(product_id=pid,
                              ordered_quantity=Decimal(str(qty)),
                              unit_price=Decimal(price))
                for pid, qty, price in lines
            ],
            **header,
        )
        pr = create_receipt(db, payload, user_id=1)
        approve_receipt(db, pr.id, user_id=2)
        send_to_supplier(db, pr.id, user_id=2)
        return pr

    return _make
