"""
DataLayer – DB-ready abstraction over PolygonClient and in-memory stores.
==========================================================================
* daily stock bars, cached per (symbol, start, end, today)
* stored SnoopTest results (newest first)
* alert criteria, upserted by id

The dict stores stand in for the hosted database; swapping to one
later only means changing the _cache_get / _cache_set helpers and the
two store classes below.
"""
from datetime import date
from typing import Optional
import logging
import uuid

import pandas as pd

from snoopflow.models import AlertCriteria, _utcnow
from snoopflow.polygon_client import PolygonClient

logger = logging.getLogger("snoopflow.data_layer")


class DataLayer:
    """
    Central data access layer with daily-keyed caching.
    Cache entries partition by today's date so stale cross-day data
    is never served.
    """

    def __init__(self, polygon: PolygonClient):
        self._poly = polygon
        self._daily_bars_cache: dict[tuple, pd.DataFrame] = {}

    # ── Cache helpers ────────────────────────────────────────

    def _cache_get(self, store: dict, key: tuple):
        return store.get(key)

    def _cache_set(self, store: dict, key: tuple, value):
        store[key] = value

    def _cache_clear(self, store: dict, symbol: str | None = None):
        if symbol is None:
            store.clear()
        else:
            for k in [k for k in store if k[0] == symbol.upper()]:
                del store[k]

    # ── Daily bars ───────────────────────────────────────────

    async def get_daily_bars(
        self, symbol: str, start_date: date, end_date: date
    ) -> pd.DataFrame:
        """
        Daily OHLCV bars for the underlying over [start_date, end_date].
        Columns: date, open, high, low, close, volume, vwap.
        """
        key = (symbol.upper(), start_date, end_date, date.today())
        cached = self._cache_get(self._daily_bars_cache, key)
        if cached is not None:
            return cached

        df = await self._poly.get_daily_bars(symbol.upper(), start_date, end_date)
        if not df.empty:
            self._cache_set(self._daily_bars_cache, key, df)
        return df

    def clear_all(self, symbol: str | None = None):
        self._cache_clear(self._daily_bars_cache, symbol)


def session_close(bars: pd.DataFrame, day: date) -> Optional[tuple[date, float]]:
    """(session date, close) of the first session on or after `day`, or None."""
    if bars.empty:
        return None
    later = bars[bars["date"] >= day]
    if later.empty:
        return None
    row = later.iloc[0]
    return row["date"], float(row["close"])


class ResultStore:
    """Saved SnoopTest runs, newest first."""

    def __init__(self, max_results: int = 100):
        self.max_results = max_results
        self._results: list[dict] = []

    def save(self, params: dict, results: list[dict], summary: dict) -> dict:
        record = {
            "id": uuid.uuid4().hex,
            "created_at": _utcnow().isoformat(),
            "params": params,
            "results": results,
            "summary": summary,
        }
        self._results.insert(0, record)
        del self._results[self.max_results:]
        logger.info("Saved snooptest result %s (%d trades)", record["id"], len(results))
        return record

    def list_results(self, ticker: Optional[str] = None) -> list[dict]:
        if ticker is None:
            return list(self._results)
        return [r for r in self._results if r["params"].get("ticker") == ticker.upper()]

    def get(self, result_id: str) -> Optional[dict]:
        return next((r for r in self._results if r["id"] == result_id), None)


class AlertStore:
    """Alert criteria keyed by id; `upsert` replaces an existing entry."""

    def __init__(self):
        self._alerts: dict[str, AlertCriteria] = {}

    def upsert(self, criteria: AlertCriteria) -> AlertCriteria:
        self._alerts[criteria.id] = criteria
        return criteria

    def delete(self, criteria_id: str) -> bool:
        return self._alerts.pop(criteria_id, None) is not None

    def get(self, criteria_id: str) -> Optional[AlertCriteria]:
        return self._alerts.get(criteria_id)

    def list_alerts(self, user_id: Optional[str] = None) -> list[AlertCriteria]:
        alerts = list(self._alerts.values())
        if user_id is not None:
            alerts = [a for a in alerts if a.user_id == user_id]
        return alerts

    def active(self) -> list[AlertCriteria]:
        return [a for a in self._alerts.values() if a.is_active]

    def watched_tickers(self) -> list[str]:
        return sorted({a.ticker for a in self.active()})
