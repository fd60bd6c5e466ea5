# inventory_core/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All inventory tables (batches, movements, receipts) inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from inventory_core.models import (  # noqa: E402,F401
    number_series,
    purchase_receipt,
    stock,
)
