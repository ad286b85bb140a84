"""
Pytest tests for the big-move backtesting engine.
Tests: move flagging, target rules, per-trade evaluation,
       summary breakdowns, end-to-end run over a fake Polygon.
"""
from datetime import date, datetime, timezone

import pytest

from snoopflow.backtesting import (
    BacktestingEngine,
    evaluate_trade,
    flag_big_moves,
    summarize,
    target_reached,
    validate_params,
)
from snoopflow.data_layer import DataLayer
from snoopflow.market_data import MarketDataService
from snoopflow.models import (
    BacktestParams,
    BacktestResult,
    BacktestTrade,
    OptionType,
    TradeLocation,
)
from snoopflow.polygon_client import MissingAPIKeyError, PolygonAPIError

from conftest import make_bars, make_contract


def _trade(trade_date=date(2024, 1, 3), option_type=OptionType.CALL, **kw) -> BacktestTrade:
    base = dict(
        id="t1", symbol="AAPL", strike=150.0, expiration=date(2024, 2, 16),
        type=option_type, trade_location=TradeLocation.AT_ASK, volume=2000,
        premium=250_000.0, trade_date=trade_date, trade_price=1.25,
        underlying_price=100.0, implied_volatility=0.0, delta=0.0,
    )
    base.update(kw)
    return BacktestTrade(**base)


def _result(movement, reached, option_type=OptionType.CALL, premium=50_000.0, symbol="AAPL", days=3):
    return BacktestResult(
        trade_id=f"{symbol}-{movement}", symbol=symbol, trade_date=date(2024, 1, 3),
        type=option_type, trade_location=TradeLocation.MIDPOINT, premium=premium,
        underlying_price_at_trade=100.0, underlying_price_at_target=100.0 + movement,
        stock_movement=movement, target_reached=reached, days_to_target=5, actual_days=days,
    )


class TestFlagBigMoves:
    def test_flags_moves_both_directions(self):
        # Jan 2,3,4,5,8
        bars = make_bars([100, 100, 106, 106, 99])
        flagged = flag_big_moves(bars, date(2024, 1, 1), date(2024, 1, 31), 5.0)
        assert flagged == [date(2024, 1, 4), date(2024, 1, 8)]

    def test_window_excludes_padding(self):
        bars = make_bars([100, 100, 106, 106, 99])
        assert flag_big_moves(bars, date(2024, 1, 5), date(2024, 1, 31), 5.0) == [date(2024, 1, 8)]

    def test_too_few_bars(self):
        assert flag_big_moves(make_bars([100]), date(2024, 1, 1), date(2024, 1, 31), 1.0) == []


class TestTargetReached:
    def test_call_needs_rise(self):
        assert target_reached(OptionType.CALL, 5.0, 5.0)
        assert not target_reached(OptionType.CALL, -8.0, 5.0)

    def test_put_needs_fall(self):
        assert target_reached(OptionType.PUT, -5.0, 5.0)
        assert not target_reached(OptionType.PUT, 8.0, 5.0)


class TestEvaluateTrade:
    # Jan 2..9 → 100, 100, 103, 106, 107, 108
    bars = make_bars([100, 100, 103, 106, 107, 108])

    def test_call_reaches_target(self):
        r = evaluate_trade(_trade(), self.bars, 5.0, 5)
        assert r.target_reached
        assert r.underlying_price_at_trade == 100.0
        assert r.underlying_price_at_target == 107.0
        assert r.stock_movement == pytest.approx(7.0)
        assert r.days_to_target == 5
        assert r.actual_days == 2

    def test_put_misses_target(self):
        r = evaluate_trade(_trade(option_type=OptionType.PUT), self.bars, 5.0, 5)
        assert not r.target_reached
        assert r.actual_days == 5

    def test_exit_past_data_is_skipped(self):
        assert evaluate_trade(_trade(trade_date=date(2024, 1, 9)), self.bars, 5.0, 5) is None

    def test_entry_on_weekend_uses_next_session(self):
        r = evaluate_trade(_trade(trade_date=date(2024, 1, 6)), self.bars, 1.0, 1)
        assert r.underlying_price_at_trade == 107.0


class TestSummarize:
    def test_empty(self):
        s = summarize([])
        assert s.total_trades == 0
        assert s.success_rate == 0.0
        assert s.best_trade is None and s.worst_trade is None

    def test_rates_and_breakdowns(self):
        results = [
            _result(7.0, True, premium=50_000, days=2),
            _result(-2.0, False, premium=200_000, days=5),
            _result(-9.0, True, OptionType.PUT, premium=900_000, symbol="TSLA", days=1),
            _result(1.0, False, OptionType.PUT, premium=600_000, symbol="TSLA", days=5),
        ]
        s = summarize(results)
        assert s.total_trades == 4
        assert s.successful_trades == 2
        assert s.success_rate == pytest.approx(50.0)
        assert s.average_stock_movement == pytest.approx((7 + 2 + 9 + 1) / 4)
        assert s.average_days_to_target == pytest.approx(13 / 4)
        assert s.best_trade.stock_movement == -9.0
        assert s.worst_trade.stock_movement == 1.0

        assert s.breakdown_by_type["calls"].total == 2
        assert s.breakdown_by_type["puts"].rate == pytest.approx(50.0)
        assert s.breakdown_by_premium["small"].total == 1
        assert s.breakdown_by_premium["medium"].total == 1
        assert s.breakdown_by_premium["large"].successful == 1
        assert set(s.breakdown_by_symbol) == {"AAPL", "TSLA"}

    def test_to_dict_is_json_ready(self):
        d = summarize([_result(7.0, True)]).to_dict()
        assert d["best_trade"]["type"] == "call"
        assert d["breakdown_by_type"]["calls"] == {"total": 1, "successful": 1, "rate": 100.0}


class TestValidation:
    def test_reversed_window(self):
        with pytest.raises(ValueError):
            validate_params(BacktestParams(start_date=date(2024, 2, 1), end_date=date(2024, 1, 1)))

    def test_no_locations(self):
        with pytest.raises(ValueError):
            validate_params(BacktestParams(
                start_date=date(2024, 1, 1), end_date=date(2024, 2, 1), trade_locations=[],
            ))


def _ms(d: date) -> int:
    return int(datetime(d.year, d.month, d.day, 5, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.fixture
def engine_setup(fake_polygon):
    # Jan 2,3,4 flat, Jan 5 +6%, then flat
    fake_polygon.daily_bars["AAPL"] = make_bars([100, 100, 100, 106, 106, 106, 106, 106])
    contract = make_contract()
    fake_polygon.contracts["AAPL"] = [contract]
    fake_polygon.aggregates[(contract.ticker, date(2024, 1, 4))] = [
        {"v": 2000, "c": 5.0, "vw": 4.9, "t": _ms(date(2024, 1, 4))},
    ]
    market = MarketDataService(fake_polygon, symbol_delay=0)
    engine = BacktestingEngine(DataLayer(fake_polygon), market)
    params = BacktestParams(
        start_date=date(2024, 1, 2), end_date=date(2024, 1, 31), symbols=["AAPL"],
        target_movement=5.0, time_horizon=3, lookback_days=1,
    )
    return fake_polygon, engine, params


class TestBacktestingEngine:
    @pytest.mark.asyncio
    async def test_finds_activity_before_move(self, engine_setup):
        _, engine, params = engine_setup
        run = await engine.run_backtest(params)
        assert run.trades_found == 1
        assert len(run.results) == 1
        r = run.results[0]
        assert r.trade_date == date(2024, 1, 4)
        assert r.premium == pytest.approx(1_000_000)
        assert r.target_reached
        assert r.actual_days == 1
        assert run.summary.success_rate == 100.0
        assert run.summary.breakdown_by_premium["large"].total == 1

    @pytest.mark.asyncio
    async def test_filters_by_floor(self, engine_setup):
        _, engine, params = engine_setup
        params.min_premium = 2_000_000
        run = await engine.run_backtest(params)
        assert run.trades_found == 0
        assert run.summary.total_trades == 0

    @pytest.mark.asyncio
    async def test_failing_symbol_is_skipped(self, engine_setup):
        fake, engine, params = engine_setup
        params.symbols = ["TSLA", "AAPL"]
        fake.errors["TSLA"] = PolygonAPIError("boom", 500)
        run = await engine.run_backtest(params)
        assert run.trades_found == 1

    @pytest.mark.asyncio
    async def test_missing_key_propagates(self, engine_setup):
        fake, engine, params = engine_setup
        fake.errors["AAPL"] = MissingAPIKeyError("no key")
        with pytest.raises(MissingAPIKeyError):
            await engine.run_backtest(params)

    @pytest.mark.asyncio
    async def test_invalid_params(self, engine_setup):
        _, engine, params = engine_setup
        params.time_horizon = 0
        with pytest.raises(ValueError):
            await engine.run_backtest(params)
