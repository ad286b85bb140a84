"""
NYSE regular-session helpers (9:30–16:00 ET, Monday–Friday).
Exchange holidays are not modelled.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

ET = ZoneInfo("America/New_York")

MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)


def _now_et(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(tz=ET)
    if now.tzinfo is None:
        # naive datetimes are taken to already be Eastern time
        return now.replace(tzinfo=ET)
    return now.astimezone(ET)


def is_market_open(now: Optional[datetime] = None) -> bool:
    now_et = _now_et(now)
    if now_et.weekday() >= 5:
        return False
    return MARKET_OPEN <= now_et.time() < MARKET_CLOSE


def get_market_status(now: Optional[datetime] = None) -> dict:
    now_et = _now_et(now)
    if now_et.weekday() >= 5:
        return {"is_open": False, "message": "Market is closed - Weekend"}
    t = now_et.time()
    if t < MARKET_OPEN:
        return {"is_open": False, "message": "Market opens at 9:30 AM ET"}
    if t >= MARKET_CLOSE:
        return {"is_open": False, "message": "Market is closed - After hours"}
    return {"is_open": True, "message": "Market is currently open"}


def today_et(now: Optional[datetime] = None) -> date:
    return _now_et(now).date()


def previous_trading_day(day: Optional[date] = None) -> date:
    """The weekday before `day` (Monday and weekends roll back to Friday)."""
    day = day or today_et()
    prev = day - timedelta(days=1)
    while prev.weekday() >= 5:
        prev -= timedelta(days=1)
    return prev
