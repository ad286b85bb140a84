"""
Backtesting Engine
==================
Replays history to ask: when a stock made a big daily move, was there
large unusual options activity in the days before it, and did that
activity call the direction?

1. daily closes per symbol over the window
2. flag days whose close-to-close move ≥ target %
3. look back 1…lookback_days calendar days for the most active options
4. keep activity clearing the volume / premium / type / location floors
5. measure the stock from trade date to trade date + horizon
6. summarise
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional
import logging

import numpy as np
import pandas as pd

from snoopflow.config import settings
from snoopflow.data_layer import DataLayer, session_close
from snoopflow.market_data import MarketDataService
from snoopflow.models import (
    BacktestParams,
    BacktestResult,
    BacktestSummary,
    BacktestTrade,
    OptionsActivity,
    OptionType,
    RateBucket,
)
from snoopflow.polygon_client import MissingAPIKeyError, PolygonAPIError

logger = logging.getLogger("snoopflow.backtesting")

PREMIUM_BUCKETS = (("small", 0, 100_000), ("medium", 100_000, 500_000), ("large", 500_000, float("inf")))

# calendar-day padding around the window so the first day has a prior
# close and the last trades have bars out to their horizon
_PAD_DAYS = 7


def validate_params(params: BacktestParams) -> None:
    if params.start_date > params.end_date:
        raise ValueError("start_date must be on or before end_date")
    if params.target_movement <= 0:
        raise ValueError("target_movement must be positive")
    if params.time_horizon < 1:
        raise ValueError("time_horizon must be at least 1 day")
    if params.lookback_days < 1:
        raise ValueError("lookback_days must be at least 1 day")
    if not params.option_types:
        raise ValueError("at least one option type is required")
    if not params.trade_locations:
        raise ValueError("at least one trade location is required")


def flag_big_moves(
    bars: pd.DataFrame, start_date: date, end_date: date, target_movement: float
) -> list[date]:
    """Sessions in [start_date, end_date] with |close/prev_close − 1| ≥ target %."""
    if len(bars) < 2:
        return []
    closes = bars["close"].astype(float).to_numpy()
    pct = np.zeros(len(closes))
    pct[1:] = np.abs(np.diff(closes) / closes[:-1]) * 100
    flagged = []
    for i in range(1, len(bars)):
        d = bars["date"].iloc[i]
        if start_date <= d <= end_date and pct[i] >= target_movement:
            flagged.append(d)
    return flagged


def qualifies(activity: OptionsActivity, params: BacktestParams) -> bool:
    return (
        activity.volume >= params.min_volume
        and activity.premium >= params.min_premium
        and activity.type in params.option_types
        and activity.trade_location in params.trade_locations
        and activity.unusual
    )


def target_reached(option_type: OptionType, movement: float, target: float) -> bool:
    """Calls need the stock up ≥ target %, puts need it down ≥ target %."""
    if option_type is OptionType.CALL:
        return movement >= target
    return movement <= -target


def evaluate_trade(
    trade: BacktestTrade, bars: pd.DataFrame, target: float, horizon: int
) -> Optional[BacktestResult]:
    entry = session_close(bars, trade.trade_date)
    exit_ = session_close(bars, trade.trade_date + timedelta(days=horizon))
    if entry is None or exit_ is None or entry[1] <= 0:
        return None
    (entry_day, p0), (exit_day, p1) = entry, exit_
    movement = (p1 - p0) / p0 * 100
    reached = target_reached(trade.type, movement, target)

    actual_days = horizon
    if reached:
        window = bars[(bars["date"] > entry_day) & (bars["date"] <= exit_day)]
        for n, close in enumerate(window["close"].astype(float), start=1):
            if target_reached(trade.type, (close - p0) / p0 * 100, target):
                actual_days = n
                break

    return BacktestResult(
        trade_id=trade.id,
        symbol=trade.symbol,
        trade_date=trade.trade_date,
        type=trade.type,
        trade_location=trade.trade_location,
        premium=trade.premium,
        underlying_price_at_trade=p0,
        underlying_price_at_target=p1,
        stock_movement=movement,
        target_reached=reached,
        days_to_target=horizon,
        actual_days=actual_days,
    )


def _bucket(results: list[BacktestResult]) -> RateBucket:
    ok = sum(1 for r in results if r.target_reached)
    return RateBucket(
        total=len(results),
        successful=ok,
        rate=(ok / len(results) * 100) if results else 0.0,
    )


def summarize(results: list[BacktestResult]) -> BacktestSummary:
    successful = [r for r in results if r.target_reached]
    by_abs_move = sorted(results, key=lambda r: abs(r.stock_movement), reverse=True)
    symbols = sorted({r.symbol for r in results})

    return BacktestSummary(
        total_trades=len(results),
        successful_trades=len(successful),
        success_rate=(len(successful) / len(results) * 100) if results else 0.0,
        average_stock_movement=float(np.mean([abs(r.stock_movement) for r in results])) if results else 0.0,
        average_days_to_target=float(np.mean([r.actual_days for r in results])) if results else 0.0,
        best_trade=by_abs_move[0] if by_abs_move else None,
        worst_trade=by_abs_move[-1] if by_abs_move else None,
        breakdown_by_type={
            "calls": _bucket([r for r in results if r.type is OptionType.CALL]),
            "puts": _bucket([r for r in results if r.type is OptionType.PUT]),
        },
        breakdown_by_premium={
            name: _bucket([r for r in results if lo <= r.premium < hi])
            for name, lo, hi in PREMIUM_BUCKETS
        },
        breakdown_by_symbol={s: _bucket([r for r in results if r.symbol == s]) for s in symbols},
    )


@dataclass
class BacktestRun:
    results: list[BacktestResult]
    summary: BacktestSummary
    trades_found: int

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
            "trades_found": self.trades_found,
        }


class BacktestingEngine:
    """Big-move backtest over Polygon history."""

    def __init__(self, data: DataLayer, market: MarketDataService, active_limit: int = 50):
        self._data = data
        self._market = market
        self.active_limit = active_limit

    async def run_backtest(self, params: BacktestParams) -> BacktestRun:
        validate_params(params)
        symbols = [s.upper() for s in (params.symbols or settings.DEFAULT_SYMBOLS)]

        results: list[BacktestResult] = []
        trades_found = 0
        for symbol in symbols:
            try:
                trades, bars = await self._collect_trades(symbol, params)
            except MissingAPIKeyError:
                raise
            except PolygonAPIError as e:
                logger.error("Backtest data failed for %s: %s", symbol, e)
                continue
            trades_found += len(trades)
            for trade in trades:
                result = evaluate_trade(trade, bars, params.target_movement, params.time_horizon)
                if result:
                    results.append(result)

        logger.info(
            "Backtest %s→%s over %d symbols: %d trades, %d evaluated",
            params.start_date, params.end_date, len(symbols), trades_found, len(results),
        )
        return BacktestRun(results=results, summary=summarize(results), trades_found=trades_found)

    async def _collect_trades(
        self, symbol: str, params: BacktestParams
    ) -> tuple[list[BacktestTrade], pd.DataFrame]:
        fetch_start = params.start_date - timedelta(days=params.lookback_days + _PAD_DAYS)
        fetch_end = min(
            params.end_date + timedelta(days=params.time_horizon + _PAD_DAYS), date.today()
        )
        bars = await self._data.get_daily_bars(symbol, fetch_start, fetch_end)
        flagged = flag_big_moves(bars, params.start_date, params.end_date, params.target_movement)
        if flagged:
            logger.info("%s: %d big-move days", symbol, len(flagged))

        trades: dict[str, BacktestTrade] = {}
        scanned: set[date] = set()
        for flag_day in flagged:
            for k in range(1, params.lookback_days + 1):
                trade_day = flag_day - timedelta(days=k)
                if trade_day.weekday() >= 5 or trade_day in scanned:
                    continue
                scanned.add(trade_day)
                activities = await self._market.get_most_active_options(
                    symbol, trade_day, limit=self.active_limit
                )
                for activity in activities:
                    if activity.id in trades or not qualifies(activity, params):
                        continue
                    trade = _to_trade(activity, trade_day, bars)
                    if trade:
                        trades[activity.id] = trade
        return list(trades.values()), bars


def _to_trade(
    activity: OptionsActivity, trade_day: date, bars: pd.DataFrame
) -> Optional[BacktestTrade]:
    entry = session_close(bars, trade_day)
    if entry is None:
        return None
    return BacktestTrade(
        id=activity.id,
        symbol=activity.symbol,
        strike=activity.strike,
        expiration=activity.expiration,
        type=activity.type,
        trade_location=activity.trade_location,
        volume=activity.volume,
        premium=activity.premium,
        trade_date=trade_day,
        trade_price=activity.last_price,
        underlying_price=entry[1],
        implied_volatility=activity.implied_volatility,
        delta=activity.delta,
    )
