"""
SnoopTest Engine
================
Replays large option prints ("sweeps") of one underlying, infers whether
each was bought or sold from where it printed against the quote, then
checks the stock `hold_period` calendar days later:

    buy  call → win if the stock rose
    buy  put  → win if it fell
    sell call → win if it fell
    sell put  → win if it rose

Midpoint prints carry no side and are counted but not scored.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
import logging
import re

import numpy as np
import pandas as pd

from snoopflow.classifier import ClassifierThresholds, expected_direction
from snoopflow.config import settings
from snoopflow.data_layer import DataLayer, ResultStore, session_close
from snoopflow.market_data import sweep_from_trade
from snoopflow.market_hours import ET
from snoopflow.models import (
    ALL_TRADE_LOCATIONS,
    LocationBreakdown,
    OptionsSweep,
    SnoopTestParams,
    SnoopTestResult,
    SnoopTestSummary,
    TradeSide,
)
from snoopflow.polygon_client import MissingAPIKeyError, PolygonAPIError, PolygonAuthError, PolygonClient

logger = logging.getLogger("snoopflow.snooptest")

MIN_HOLD_DAYS = 1
MAX_HOLD_DAYS = 30

_TICKER_RE = re.compile(r"^[A-Z][A-Z0-9.]{0,9}$")


def validate_params(params: SnoopTestParams) -> None:
    if not params.ticker or not _TICKER_RE.match(params.ticker.upper()):
        raise ValueError(f"Invalid ticker: {params.ticker!r}")
    if params.start_date > params.end_date:
        raise ValueError("start_date must be on or before end_date")
    if not MIN_HOLD_DAYS <= params.hold_period <= MAX_HOLD_DAYS:
        raise ValueError(
            f"hold_period must be between {MIN_HOLD_DAYS} and {MAX_HOLD_DAYS} days"
        )
    if not params.trade_locations:
        raise ValueError("at least one trade location is required")


def is_win(sweep: OptionsSweep, percent_change: float) -> bool:
    direction = expected_direction(sweep.option_type, sweep.inferred_side)
    return direction * percent_change > 0


def analyze_sweeps(
    sweeps: list[OptionsSweep], bars: pd.DataFrame, hold_period: int
) -> list[SnoopTestResult]:
    """Score every non-neutral sweep that has an entry and an exit close."""
    results = []
    for sweep in sweeps:
        if sweep.inferred_side is TradeSide.NEUTRAL:
            continue
        entry = session_close(bars, sweep.trade_date)
        exit_ = session_close(bars, sweep.trade_date + timedelta(days=hold_period))
        if entry is None or exit_ is None or entry[1] <= 0:
            continue
        pct = (exit_[1] - entry[1]) / entry[1] * 100
        results.append(
            SnoopTestResult(
                id=f"result_{sweep.id}",
                date=sweep.trade_date,
                ticker=sweep.ticker,
                option_type=sweep.option_type,
                trade_location=sweep.trade_location,
                inferred_side=sweep.inferred_side,
                entry_price=entry[1],
                exit_price=exit_[1],
                percent_change=pct,
                is_win=is_win(sweep, pct),
                hold_days=hold_period,
            )
        )
    return results


def summarize(results: list[SnoopTestResult], total_sweeps: int) -> SnoopTestSummary:
    wins = sum(1 for r in results if r.is_win)
    moves = [abs(r.percent_change) for r in results]
    by_abs_move = sorted(results, key=lambda r: abs(r.percent_change), reverse=True)

    breakdown = {}
    for location in ALL_TRADE_LOCATIONS:
        group = [r for r in results if r.trade_location is location]
        group_wins = sum(1 for r in group if r.is_win)
        breakdown[location.value] = LocationBreakdown(
            total=len(group),
            wins=group_wins,
            win_rate=(group_wins / len(group) * 100) if group else 0.0,
            avg_move=float(np.mean([abs(r.percent_change) for r in group])) if group else 0.0,
        )

    return SnoopTestSummary(
        total_trades=total_sweeps,
        neutral_trades=total_sweeps - len(results),
        non_neutral_trades=len(results),
        wins=wins,
        losses=len(results) - wins,
        win_rate=(wins / len(results) * 100) if results else 0.0,
        average_move=float(np.mean(moves)) if moves else 0.0,
        best_trade=by_abs_move[0] if by_abs_move else None,
        worst_trade=by_abs_move[-1] if by_abs_move else None,
        breakdown_by_location=breakdown,
    )


@dataclass
class SnoopTestRun:
    params: SnoopTestParams
    sweeps: list[OptionsSweep]
    results: list[SnoopTestResult]
    summary: SnoopTestSummary
    result_id: Optional[str] = None

    def params_dict(self) -> dict:
        return {
            "ticker": self.params.ticker.upper(),
            "start_date": self.params.start_date.isoformat(),
            "end_date": self.params.end_date.isoformat(),
            "hold_period": self.params.hold_period,
            "trade_locations": [loc.value for loc in self.params.trade_locations],
        }

    def to_dict(self) -> dict:
        return {
            "id": self.result_id,
            "params": self.params_dict(),
            "sweeps_found": len(self.sweeps),
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
        }


class SnoopTestEngine:
    def __init__(
        self,
        polygon: PolygonClient,
        data: DataLayer,
        results: Optional[ResultStore] = None,
        thresholds: Optional[ClassifierThresholds] = None,
        *,
        min_size: Optional[int] = None,
        max_contracts: int = 20,
        max_sweeps: int = 500,
    ):
        self._poly = polygon
        self._data = data
        self._results = results
        self.thresholds = thresholds or ClassifierThresholds.from_settings(settings)
        self.min_size = min_size or settings.SWEEP_MIN_SIZE
        self.max_contracts = max_contracts
        self.max_sweeps = max_sweeps

    async def fetch_sweeps(self, params: SnoopTestParams) -> list[OptionsSweep]:
        """Large prints of the underlying's contracts in the window, located against the quote."""
        ticker = params.ticker.upper()
        start = datetime.combine(params.start_date, time.min, tzinfo=ET)
        end = datetime.combine(params.end_date, time.max, tzinfo=ET)
        contracts = await self._poly.get_options_contracts(
            ticker,
            as_of=params.start_date,
            expiration_gte=params.start_date,
            max_results=self.max_contracts,
        )

        sweeps: list[OptionsSweep] = []
        for contract in contracts:
            try:
                trades = await self._poly.get_trades(contract.ticker, start, end)
                for trade in trades:
                    if int(trade.get("size") or 0) < self.min_size:
                        continue
                    ts_ns = trade.get("sip_timestamp") or trade.get("participant_timestamp")
                    if not ts_ns:
                        continue
                    quote = await self._poly.get_quote_at(contract.ticker, ts_ns)
                    sweep = sweep_from_trade(contract, trade, quote, self.thresholds)
                    if sweep and sweep.trade_location in params.trade_locations:
                        sweeps.append(sweep)
                    if len(sweeps) >= self.max_sweeps:
                        logger.info("%s: sweep cap (%d) reached", ticker, self.max_sweeps)
                        return sweeps
            except (MissingAPIKeyError, PolygonAuthError):
                raise
            except PolygonAPIError as e:
                logger.warning("Trades failed for %s: %s", contract.ticker, e)
                continue
        return sweeps

    async def run_test(self, params: SnoopTestParams) -> SnoopTestRun:
        validate_params(params)
        ticker = params.ticker.upper()

        sweeps = await self.fetch_sweeps(params)
        bars_end = min(
            params.end_date + timedelta(days=params.hold_period + 7), date.today()
        )
        bars = await self._data.get_daily_bars(ticker, params.start_date, bars_end)
        results = analyze_sweeps(sweeps, bars, params.hold_period)
        summary = summarize(results, len(sweeps))
        logger.info(
            "SnoopTest %s %s→%s hold=%d: %d sweeps, %d scored, win rate %.1f%%",
            ticker, params.start_date, params.end_date, params.hold_period,
            len(sweeps), len(results), summary.win_rate,
        )

        run = SnoopTestRun(params=params, sweeps=sweeps, results=results, summary=summary)
        if self._results is not None:
            record = self._results.save(
                run.params_dict(),
                [r.to_dict() for r in results],
                summary.to_dict(),
            )
            run.result_id = record["id"]
        return run
