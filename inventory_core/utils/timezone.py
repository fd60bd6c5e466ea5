# inventory_core/utils/timezone.py
from __future__ import annotations

from datetime import datetime, date, time, timedelta
from typing import Union
from zoneinfo import ZoneInfo

from inventory_core.core.config import settings

LOCAL_TZ = ZoneInfo(settings.TIMEZONE)


def now_local() -> datetime:
    """
    Returns a *naive* datetime in the store's local time zone.
    DateTime columns are naive, so the tzinfo is dropped before storing.
    """
    return datetime.now(LOCAL_TZ).replace(tzinfo=None)


def today_local() -> date:
    return now_local().date()


def date_key(d: date) -> int:
    return int(d.strftime("%Y%m%d"))


def day_start(d: Union[date, datetime]) -> datetime:
    if isinstance(d, datetime):
        return d
    return datetime.combine(d, time.min)


def day_end_exclusive(d: Union[date, datetime]) -> datetime:
    """Midnight after `d`, for `< end` range filters covering the whole day."""
    if isinstance(d, datetime):
        return d
    return datetime.combine(d + timedelta(days=1), time.min)
