# inventory_core/services/number_series.py
from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_core.core.config import settings
from inventory_core.core.exceptions import DuplicateReceiptNumber
from inventory_core.models.number_series import NumberSeries
from inventory_core.utils.timezone import date_key, today_local

logger = logging.getLogger(__name__)


def _lock_series_row(db: Session, key: str, dk: int) -> Optional[NumberSeries]:
    return (db.query(NumberSeries).filter(
        NumberSeries.key == key,
        NumberSeries.date_key == dk).populate_existing().with_for_update().first())


def next_document_number(
    db: Session,
    key: str,  # e.g. "PR"
    prefix: str,  # e.g. "PR"
    doc_date: Optional[date] = None,
    pad: int = 4,  # 0001, 0002...
    max_retries: Optional[int] = None,
) -> str:
    """
    Collision-safe number generator on NumberSeries with UNIQUE(key, date_key).

    The day's row is locked while its counter is bumped. When two sessions
    create the day's row at the same time one of them hits IntegrityError;
    that insert is undone in its SAVEPOINT and the row is fetched again.

    Example: PR202406010001
    """
    doc_date = doc_date or today_local()
    dk = date_key(doc_date)
    attempts = max(int(max_retries or settings.NUMBER_SERIES_MAX_RETRIES), 1)

    for attempt in range(1, attempts + 1):
        row = _lock_series_row(db, key, dk)
        if row is None:
            try:
                with db.begin_nested():
                    db.add(NumberSeries(key=key, date_key=dk, next_seq=1))
            except IntegrityError:
                logger.warning(
                    "Number series %s/%s created concurrently (attempt %s/%s)",
                    key, dk, attempt, attempts)
                continue
            row = _lock_series_row(db, key, dk)
            if row is None:
                continue

        seq = int(row.next_seq or 1)
        row.next_seq = seq + 1
        db.flush()
        return f"{prefix}{doc_date.strftime('%Y%m%d')}{seq:0{pad}d}"

    raise DuplicateReceiptNumber(
        f"Could not allocate a {key} number for {doc_date.isoformat()} after {attempts} attempts"
    )


def next_receipt_number(db: Session, doc_date: Optional[date] = None) -> str:
    prefix = settings.RECEIPT_NUMBER_PREFIX
    return next_document_number(db,
                                key=prefix,
                                prefix=prefix,
                                doc_date=doc_date,
                                pad=settings.RECEIPT_NUMBER_PAD)
