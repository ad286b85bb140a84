"""
Market Data Service
===================
Turns Polygon contracts + daily aggregates / snapshots into classified
`OptionsActivity` records and runs the multi-symbol scans.

Only real market data flows through here: Greeks, IV and open interest
come from snapshots when available and stay at 0 otherwise; a record
with no usable price is dropped.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional
import asyncio
import logging

from snoopflow.classifier import (
    ClassifierThresholds,
    calculate_premium,
    calculate_sentiment,
    detect_unusual_activity,
    get_trade_location,
    infer_trade_side,
    is_block_trade,
)
from snoopflow.config import settings
from snoopflow.market_hours import ET, previous_trading_day, today_et
from snoopflow.models import (
    BacktestTrade,
    OptionsActivity,
    OptionsContract,
    OptionsSweep,
    TradeLocation,
)
from snoopflow.polygon_client import (
    MissingAPIKeyError,
    PolygonAPIError,
    PolygonAuthError,
    PolygonClient,
)

logger = logging.getLogger("snoopflow.market_data")

MAX_EXPIRY_DAYS = 90
MULTI_SYMBOL_CAP = 100


def from_ms(ms) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def from_ns(ns) -> datetime:
    return datetime.fromtimestamp(ns / 1_000_000_000, tz=timezone.utc)


def _quote_location(
    price: float, quote: Optional[dict], t: ClassifierThresholds
) -> tuple[float, float, TradeLocation]:
    """(bid, ask, location) – midpoint when no two-sided quote is known."""
    bid = float((quote or {}).get("bid") or 0.0)
    ask = float((quote or {}).get("ask") or 0.0)
    if bid <= 0 or ask <= 0 or ask < bid:
        return bid, ask, TradeLocation.MIDPOINT
    return bid, ask, get_trade_location(price, bid, ask, t)


def build_activity(
    *,
    activity_id: str,
    contract: OptionsContract,
    volume: int,
    price: float,
    timestamp: datetime,
    snapshot: Optional[dict] = None,
    thresholds: ClassifierThresholds,
) -> OptionsActivity:
    snapshot = snapshot or {}
    greeks = snapshot.get("greeks") or {}
    delta = float(greeks.get("delta") or 0.0)
    open_interest = int(snapshot.get("open_interest") or 0)
    bid, ask, location = _quote_location(price, snapshot.get("last_quote"), thresholds)
    premium = calculate_premium(volume, price)

    return OptionsActivity(
        id=activity_id,
        symbol=contract.underlying,
        strike=contract.strike,
        expiration=contract.expiration,
        type=contract.type,
        volume=volume,
        open_interest=open_interest,
        last_price=price,
        bid=bid,
        ask=ask,
        trade_location=location,
        implied_volatility=float(snapshot.get("implied_volatility") or 0.0),
        delta=delta,
        gamma=float(greeks.get("gamma") or 0.0),
        theta=float(greeks.get("theta") or 0.0),
        vega=float(greeks.get("vega") or 0.0),
        premium=premium,
        timestamp=timestamp,
        unusual=detect_unusual_activity(volume, premium, open_interest, t=thresholds),
        block_trade=is_block_trade(volume, premium, thresholds),
        sentiment=calculate_sentiment(contract.type, delta, volume, thresholds),
        contract_ticker=contract.ticker,
    )


def activity_from_aggregate(
    contract: OptionsContract,
    agg: dict,
    snapshot: Optional[dict] = None,
    thresholds: Optional[ClassifierThresholds] = None,
) -> Optional[OptionsActivity]:
    """Daily bar of one contract → activity. None when the bar has no price."""
    price = float(agg.get("c") or agg.get("vw") or 0.0)
    if price <= 0:
        return None
    return build_activity(
        activity_id=f"{contract.ticker}-{agg.get('t', 0)}",
        contract=contract,
        volume=int(agg.get("v") or 0),
        price=price,
        timestamp=from_ms(agg.get("t", 0)),
        snapshot=snapshot,
        thresholds=thresholds or ClassifierThresholds.from_settings(settings),
    )


def activity_from_snapshot(
    result: dict, thresholds: Optional[ClassifierThresholds] = None
) -> Optional[OptionsActivity]:
    """One chain-snapshot entry → activity with real quotes and Greeks."""
    details = result.get("details") or {}
    ticker = details.get("ticker") or result.get("ticker")
    if not ticker or not details.get("expiration_date"):
        return None
    underlying = (result.get("underlying_asset") or {}).get("ticker", "")
    contract = OptionsContract.from_polygon({**details, "ticker": ticker, "underlying_ticker": underlying})

    day = result.get("day") or result.get("session") or {}
    last_trade = result.get("last_trade") or {}
    price = float(last_trade.get("price") or day.get("close") or 0.0)
    if price <= 0:
        return None

    ts_ns = last_trade.get("sip_timestamp") or day.get("last_updated")
    timestamp = from_ns(ts_ns) if ts_ns else datetime.now(timezone.utc)

    return build_activity(
        activity_id=f"{ticker}-{ts_ns or 0}",
        contract=contract,
        volume=int(day.get("volume") or 0),
        price=price,
        timestamp=timestamp,
        snapshot=result,
        thresholds=thresholds or ClassifierThresholds.from_settings(settings),
    )


class MarketDataService:
    """Scans built on top of `PolygonClient`."""

    def __init__(
        self,
        polygon: PolygonClient,
        thresholds: Optional[ClassifierThresholds] = None,
        *,
        max_contracts: Optional[int] = None,
        symbol_delay: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        self._poly = polygon
        self.thresholds = thresholds or ClassifierThresholds.from_settings(settings)
        self.max_contracts = max_contracts or settings.MAX_CONTRACTS_PER_SYMBOL
        self.symbol_delay = (
            settings.SYMBOL_DELAY_SECONDS if symbol_delay is None else symbol_delay
        )
        self._sleep = sleep

    async def get_most_active_options(
        self, symbol: str, day: Optional[date] = None, limit: int = 20
    ) -> list[OptionsActivity]:
        """
        Daily aggregates of the contracts expiring 1–90 days after `day`,
        highest volume first. A scan of the current session also carries
        the contracts' live quotes, Greeks and open interest.
        """
        day = day or previous_trading_day()
        contracts = await self._poly.get_options_contracts(
            symbol,
            as_of=day,
            expiration_gte=day + timedelta(days=1),
            expiration_lte=day + timedelta(days=MAX_EXPIRY_DAYS),
        )
        contracts = [
            c for c in contracts
            if 0 < (c.expiration - day).days <= MAX_EXPIRY_DAYS
        ][: self.max_contracts]
        snapshots = await self._session_snapshots(contracts) if day >= today_et() else {}

        activities: list[OptionsActivity] = []
        for contract in contracts:
            try:
                bars = await self._poly.get_aggregates(contract.ticker, day, day)
            except (MissingAPIKeyError, PolygonAuthError):
                raise
            except PolygonAPIError as e:
                logger.warning("Aggregates failed for %s on %s: %s", contract.ticker, day, e)
                continue
            if not bars:
                continue
            activity = activity_from_aggregate(
                contract, bars[0], snapshots.get(contract.ticker), self.thresholds
            )
            if activity:
                activities.append(activity)

        activities.sort(key=lambda a: a.volume, reverse=True)
        return activities[:limit]

    async def _session_snapshots(self, contracts: list[OptionsContract]) -> dict[str, dict]:
        """Current snapshots (quotes, Greeks, OI) for a same-day scan; {} if unavailable."""
        if not contracts:
            return {}
        try:
            return await self._poly.get_contract_snapshots([c.ticker for c in contracts])
        except MissingAPIKeyError:
            raise
        except PolygonAPIError as e:
            logger.warning("Contract snapshots unavailable: %s", e)
            return {}

    async def get_unusual_activity_multi_symbol(
        self, symbols: Optional[list[str]] = None, day: Optional[date] = None
    ) -> list[OptionsActivity]:
        symbols = [s.upper() for s in (symbols or settings.DEFAULT_SYMBOLS)]
        day = day or previous_trading_day()

        async def _scan(i: int, symbol: str) -> list[OptionsActivity]:
            if i and self.symbol_delay:
                await self._sleep(i * self.symbol_delay)
            try:
                found = await self.get_most_active_options(symbol, day, limit=self.max_contracts)
            except MissingAPIKeyError:
                raise
            except PolygonAPIError as e:
                logger.error("Unusual-activity scan failed for %s: %s", symbol, e)
                return []
            return [a for a in found if a.unusual]

        per_symbol = await asyncio.gather(*(_scan(i, s) for i, s in enumerate(symbols)))
        combined = [a for group in per_symbol for a in group]
        combined.sort(key=lambda a: a.premium, reverse=True)
        logger.info(
            "Scanned %d symbols for %s: %d unusual", len(symbols), day, len(combined)
        )
        return combined[:MULTI_SYMBOL_CAP]

    async def get_live_activity(
        self, symbol: str, limit: int = 100
    ) -> list[OptionsActivity]:
        """Current chain snapshot → activities, highest volume first."""
        results = await self._poly.get_options_chain_snapshot(symbol)
        activities = [
            a for a in (activity_from_snapshot(r, self.thresholds) for r in results) if a
        ]
        activities.sort(key=lambda a: a.volume, reverse=True)
        return activities[:limit]

    async def get_historical_block_trades(
        self,
        symbols: list[str],
        start_date: date,
        end_date: date,
        min_volume: int = 1000,
        min_premium: float = 100_000,
        max_contracts: int = 20,
    ) -> list[BacktestTrade]:
        """Contract-days in the window whose volume and VWAP premium clear both floors."""
        trades: list[BacktestTrade] = []
        for symbol in symbols:
            symbol = symbol.upper()
            try:
                closes = await self._closes(symbol, start_date, end_date)
                contracts = await self._poly.get_options_contracts(
                    symbol,
                    as_of=start_date,
                    expiration_gte=start_date,
                    max_results=max_contracts,
                )
                for contract in contracts:
                    for agg in await self._poly.get_aggregates(contract.ticker, start_date, end_date):
                        trade = self._block_trade(contract, agg, closes, min_volume, min_premium)
                        if trade:
                            trades.append(trade)
            except MissingAPIKeyError:
                raise
            except PolygonAPIError as e:
                logger.error("Block-trade scan failed for %s: %s", symbol, e)
                continue
        trades.sort(key=lambda t: t.premium, reverse=True)
        return trades

    async def _closes(self, symbol: str, start: date, end: date) -> dict[date, float]:
        df = await self._poly.get_daily_bars(symbol, start, end)
        return dict(zip(df["date"], df["close"])) if not df.empty else {}

    def _block_trade(
        self,
        contract: OptionsContract,
        agg: dict,
        closes: dict[date, float],
        min_volume: int,
        min_premium: float,
    ) -> Optional[BacktestTrade]:
        volume = int(agg.get("v") or 0)
        price = float(agg.get("vw") or agg.get("c") or 0.0)
        premium = calculate_premium(volume, price)
        if volume < min_volume or premium < min_premium:
            return None
        trade_date = from_ms(agg["t"]).date()
        underlying = closes.get(trade_date)
        if not underlying:
            return None
        return BacktestTrade(
            id=f"{contract.ticker}-{agg['t']}",
            symbol=contract.underlying,
            strike=contract.strike,
            expiration=contract.expiration,
            type=contract.type,
            trade_location=TradeLocation.MIDPOINT,
            volume=volume,
            premium=premium,
            trade_date=trade_date,
            trade_price=price,
            underlying_price=underlying,
            implied_volatility=0.0,
            delta=0.0,
        )


def sweep_from_trade(
    contract: OptionsContract,
    trade: dict,
    quote: Optional[dict],
    thresholds: ClassifierThresholds,
) -> Optional[OptionsSweep]:
    """
    One option print + the NBBO prevailing at that moment → sweep.
    None without a two-sided quote or a usable price.
    """
    price = float(trade.get("price") or 0.0)
    quote = quote or {}
    bid = float(quote.get("bid_price") or 0.0)
    ask = float(quote.get("ask_price") or 0.0)
    if price <= 0 or bid <= 0 or ask <= 0 or ask < bid:
        return None

    ts_ns = trade.get("sip_timestamp") or trade.get("participant_timestamp") or 0
    ts = from_ns(ts_ns)
    size = int(trade.get("size") or 0)
    location = get_trade_location(price, bid, ask, thresholds)
    return OptionsSweep(
        id=f"{contract.ticker}_{ts_ns}",
        ticker=contract.underlying,
        contract_ticker=contract.ticker,
        trade_date=ts.astimezone(ET).date(),
        option_type=contract.type,
        strike=contract.strike,
        expiration=contract.expiration,
        volume=size,
        price=price,
        bid=bid,
        ask=ask,
        trade_location=location,
        inferred_side=infer_trade_side(location),
        premium=calculate_premium(size, price),
        timestamp=ts,
    )
