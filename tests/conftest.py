"""
Shared builders and an in-memory stand-in for PolygonClient.
"""
from datetime import date, datetime, timedelta, timezone

import pandas as pd
import pytest

from snoopflow.models import (
    OptionsActivity,
    OptionsContract,
    OptionsSweep,
    OptionType,
    Sentiment,
    TradeLocation,
    TradeSide,
)
from snoopflow.polygon_client import BAR_COLUMNS, format_option_ticker


def make_bars(closes: list[float], start: date = date(2024, 1, 2)) -> pd.DataFrame:
    """One row per weekday starting at `start`."""
    rows = []
    d = start
    for close in closes:
        while d.weekday() >= 5:
            d += timedelta(days=1)
        rows.append({
            "date": d, "open": close, "high": close, "low": close,
            "close": close, "volume": 1_000_000, "vwap": close,
        })
        d += timedelta(days=1)
    return pd.DataFrame(rows, columns=BAR_COLUMNS)


def make_contract(
    symbol="AAPL", expiration=date(2024, 2, 16), strike=150.0, option_type=OptionType.CALL
) -> OptionsContract:
    return OptionsContract(
        ticker=format_option_ticker(symbol, expiration, strike, option_type),
        underlying=symbol,
        type=option_type,
        strike=strike,
        expiration=expiration,
    )


def make_activity(**kw) -> OptionsActivity:
    base = dict(
        id="O:AAPL240216C00150000-1",
        symbol="AAPL",
        strike=150.0,
        expiration=date(2024, 2, 16),
        type=OptionType.CALL,
        volume=2000,
        open_interest=5000,
        last_price=2.5,
        bid=2.4,
        ask=2.6,
        trade_location=TradeLocation.AT_ASK,
        implied_volatility=0.3,
        delta=0.5,
        gamma=0.05,
        theta=-0.03,
        vega=0.1,
        premium=500_000.0,
        timestamp=datetime(2024, 1, 10, 15, tzinfo=timezone.utc),
        unusual=True,
        block_trade=True,
        sentiment=Sentiment.BULLISH,
    )
    base.update(kw)
    return OptionsActivity(**base)


def make_sweep(**kw) -> OptionsSweep:
    base = dict(
        id="O:AAPL240216C00150000_1704900000000000000",
        ticker="AAPL",
        contract_ticker="O:AAPL240216C00150000",
        trade_date=date(2024, 1, 10),
        option_type=OptionType.CALL,
        strike=150.0,
        expiration=date(2024, 2, 16),
        volume=500,
        price=2.6,
        bid=2.4,
        ask=2.6,
        trade_location=TradeLocation.AT_ASK,
        inferred_side=TradeSide.BUY,
        premium=130_000.0,
        timestamp=datetime(2024, 1, 10, 15, tzinfo=timezone.utc),
    )
    base.update(kw)
    return OptionsSweep(**base)


def ns(dt: datetime) -> int:
    return int(dt.timestamp() * 1_000_000_000)


class FakePolygon:
    """
    Serves canned responses keyed by ticker. Records calls so tests can
    assert on what was fetched.
    """

    def __init__(self):
        self.contracts: dict[str, list[OptionsContract]] = {}
        self.aggregates: dict[tuple, list[dict]] = {}
        self.daily_bars: dict[str, pd.DataFrame] = {}
        self.chain: dict[str, list[dict]] = {}
        self.trades: dict[str, list[dict]] = {}
        self.quotes: dict[str, dict] = {}
        self.raw: dict[str, dict] = {}
        self.ratings: list[dict] = []
        self.details: dict[str, dict] = {}
        self.prev_close: dict[str, dict] = {}
        self.snapshots: dict[str, dict] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple] = []

    def _maybe_raise(self, key: str):
        if key in self.errors:
            raise self.errors[key]

    async def get_options_contracts(self, underlying, **kw):
        self.calls.append(("contracts", underlying, kw))
        self._maybe_raise(underlying)
        items = self.contracts.get(underlying.upper(), [])
        if kw.get("max_results"):
            items = items[: kw["max_results"]]
        return items

    async def get_aggregates(self, ticker, start, end):
        self.calls.append(("aggs", ticker, start, end))
        self._maybe_raise(ticker)
        return self.aggregates.get((ticker, start), [])

    async def get_daily_bars(self, ticker, start, end):
        self.calls.append(("bars", ticker, start, end))
        self._maybe_raise(ticker)
        return self.daily_bars.get(ticker, pd.DataFrame(columns=BAR_COLUMNS))

    async def get_options_chain_snapshot(self, underlying, expiration=None, max_results=250):
        self.calls.append(("chain", underlying))
        self._maybe_raise(underlying)
        return self.chain.get(underlying.upper(), [])

    async def get_trades(self, option_ticker, start, end, max_results=5000):
        self.calls.append(("trades", option_ticker, start, end))
        self._maybe_raise(option_ticker)
        return self.trades.get(option_ticker, [])

    async def get_quote_at(self, option_ticker, ts_ns):
        self.calls.append(("quote", option_ticker, ts_ns))
        return self.quotes.get(option_ticker)

    async def get_raw(self, url):
        self.calls.append(("raw", url))
        return self.raw.get(url, {})

    async def get_contract_snapshots(self, tickers, batch_size=250):
        self.calls.append(("snapshots", tuple(tickers)))
        self._maybe_raise("snapshots")
        return {t: self.snapshots[t] for t in tickers if t in self.snapshots}

    async def get_benzinga_ratings(self, day, lookback_days=4, max_results=1000):
        self.calls.append(("ratings", day, lookback_days))
        self._maybe_raise("ratings")
        return self.ratings

    async def get_ticker_details(self, ticker):
        self.calls.append(("details", ticker))
        self._maybe_raise(f"details:{ticker}")
        return self.details.get(ticker)

    async def get_previous_close(self, ticker):
        self.calls.append(("prev", ticker))
        self._maybe_raise(f"prev:{ticker}")
        return self.prev_close.get(ticker)

    async def close(self):
        pass


@pytest.fixture
def fake_polygon() -> FakePolygon:
    return FakePolygon()
