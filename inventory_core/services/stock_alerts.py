# inventory_core/services/stock_alerts.py
from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from inventory_core.core.config import settings
from inventory_core.schemas.inventory import (
    AlertKind,
    StockAlertOut,
    StockAlertScanOut,
)
from inventory_core.services.batch_store import expired_batches, expiring_batches
from inventory_core.services.inventory_summary import low_stock_products
from inventory_core.utils.decimals import qty4
from inventory_core.utils.timezone import today_local

logger = logging.getLogger(__name__)

Notifier = Callable[[StockAlertScanOut], None]


def scan_stock_alerts(
    db: Session,
    *,
    reorder_levels: Optional[Mapping[int, object]] = None,
    expiry_days: Optional[int] = None,
    today: Optional[date] = None,
) -> StockAlertScanOut:
    """Read-only: expiring / expired batches and products under reorder level."""
    today = today or today_local()
    days = settings.EXPIRY_WARNING_DAYS if expiry_days is None else int(expiry_days)

    out = StockAlertScanOut(as_of=today)

    for b in expiring_batches(db, days, today=today):
        left = (b.expiry_date - today).days
        out.expiring.append(
            StockAlertOut(
                kind=AlertKind.EXPIRING,
                product_id=b.product_id,
                batch_id=b.id,
                batch_number=b.batch_number,
                expiry_date=b.expiry_date,
                days_to_expiry=left,
                quantity=qty4(b.available_quantity),
                message=f"Batch {b.batch_number or b.id} expires in {left} day(s)",
            ))

    for b in expired_batches(db, today=today):
        out.expired.append(
            StockAlertOut(
                kind=AlertKind.EXPIRED,
                product_id=b.product_id,
                batch_id=b.id,
                batch_number=b.batch_number,
                expiry_date=b.expiry_date,
                days_to_expiry=(b.expiry_date - today).days,
                quantity=qty4(b.available_quantity),
                message=f"Batch {b.batch_number or b.id} expired on {b.expiry_date.isoformat()}",
            ))

    if reorder_levels:
        for lv in low_stock_products(db, reorder_levels):
            out.low_stock.append(
                StockAlertOut(
                    kind=AlertKind.LOW_STOCK,
                    product_id=lv.product_id,
                    quantity=lv.on_hand,
                    reorder_level=lv.reorder_level,
                    message=f"On hand {lv.on_hand} at or below reorder level {lv.reorder_level}",
                ))

    return out


class StockAlertScanner:
    """
    Periodic read-only alert scan on a background thread.

    Each run opens its own session, scans, rolls back and hands the result to
    `notifier`. Nothing in the database is changed.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Notifier,
        *,
        reorder_levels: Optional[Callable[[], Mapping[int, object]]] = None,
        expiry_days: Optional[int] = None,
        interval_seconds: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._notifier = notifier
        self._reorder_levels = reorder_levels
        self._expiry_days = expiry_days
        self._interval = (settings.ALERT_SCAN_INTERVAL_SECONDS
                          if interval_seconds is None else interval_seconds)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[StockAlertScanOut]:
        db = self._session_factory()
        try:
            levels = self._reorder_levels() if self._reorder_levels else None
            result = scan_stock_alerts(db,
                                       reorder_levels=levels,
                                       expiry_days=self._expiry_days)
        finally:
            db.rollback()
            db.close()

        if result.total:
            try:
                self._notifier(result)
            except Exception:
                logger.exception("Stock alert notifier failed")
        logger.info("Stock alert scan: %s expiring, %s expired, %s low stock",
                    len(result.expiring), len(result.expired),
                    len(result.low_stock))
        return result

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop,
                                        name="stock-alert-scanner",
                                        daemon=True)
        self._thread.start()
        logger.info("Stock alert scanner started, every %ss", self._interval)

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("Stock alert scanner stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Stock alert scan failed")
            self._stop_event.wait(timeout=self._interval)
