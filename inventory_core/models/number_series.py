# inventory_core/models/number_series.py
from __future__ import annotations

from sqlalchemy import Column, Integer, String, UniqueConstraint

from inventory_core.db.base import Base


class NumberSeries(Base):
    """Per (key, day) running counter for document numbers."""
    __tablename__ = "number_series"

    id = Column(Integer, primary_key=True)
    key = Column(String(30), nullable=False)
    date_key = Column(Integer, nullable=False)  # YYYYMMDD
    next_seq = Column(Integer, nullable=False, default=1)

    __table_args__ = (UniqueConstraint("key",
                                       "date_key",
                                       name="uq_number_series_key_date"), )
