"""
SnoopFlow – Options Flow Intelligence
Main FastAPI Application

  - Async endpoints over the shared async PolygonClient
  - FastAPI lifespan for the live feed, sweep monitor and httpx client
  - Dependency-injected services (get_polygon, get_market_data, ...)
"""
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional
from urllib.parse import unquote, urlparse
import asyncio
import json
import logging
import uuid

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from snoopflow.backtesting import BacktestingEngine
from snoopflow.config import settings
from snoopflow.data_layer import AlertStore, DataLayer, ResultStore
from snoopflow.filters import FilterOptions, apply_filters
from snoopflow.ideas import IdeasService
from snoopflow.live_feed import SUBSCRIBER_QUEUE_SIZE, LiveFeedManager, live_feed_manager
from snoopflow.market_data import MarketDataService
from snoopflow.market_hours import get_market_status
from snoopflow.models import (
    ALL_OPTION_TYPES,
    ALL_SENTIMENTS,
    ALL_TRADE_LOCATIONS,
    AlertCriteria,
    BacktestParams,
    NotificationType,
    OptionsSweep,
    OptionType,
    Sentiment,
    SnoopTestParams,
    TradeLocation,
    TradeSide,
)
from snoopflow.polygon_client import (
    MissingAPIKeyError,
    PolygonAPIError,
    PolygonAuthError,
    PolygonClient,
    polygon_client,
)
from snoopflow.snooptest import SnoopTestEngine
from snoopflow.sweep_monitor import LoggingNotifier, RecentAlertsNotifier, SweepMonitor

logger = logging.getLogger("snoopflow")

PROXY_HOST = "api.polygon.io"
PROXY_ALLOWED_PATHS = (
    "/v2/aggs/ticker/",
    "/v3/reference/options/contracts",
    "/v3/snapshot/options/",
)


# ── Service singletons ──────────────────────────────────────

_data_layer = DataLayer(polygon_client)
_market_data = MarketDataService(polygon_client)
_result_store = ResultStore()
_alert_store = AlertStore()
_recent_alerts = RecentAlertsNotifier()
_backtester = BacktestingEngine(_data_layer, _market_data)
_snooptest = SnoopTestEngine(polygon_client, _data_layer, _result_store)
_ideas = IdeasService(polygon_client, _market_data)
_sweep_monitor = SweepMonitor(
    polygon_client, _alert_store, notifiers=[LoggingNotifier(), _recent_alerts]
)


# ── Lifespan (startup / shutdown) ───────────────────────────

@asynccontextmanager
async def lifespan(application: FastAPI):
    if settings.LIVE_FEED_ENABLED:
        await live_feed_manager.start()
    if settings.SWEEP_MONITOR_ENABLED:
        await _sweep_monitor.start()
    yield
    await _sweep_monitor.stop()
    await live_feed_manager.stop()
    await polygon_client.close()


app = FastAPI(
    title="SnoopFlow",
    description="Unusual options activity, backtesting and sweep alerts",
    version="1.0.0",
    lifespan=lifespan,
)


# ── Dependency helpers ──────────────────────────────────────

def get_polygon() -> PolygonClient:
    return polygon_client


def get_market_data() -> MarketDataService:
    return _market_data


def get_backtester() -> BacktestingEngine:
    return _backtester


def get_snooptest() -> SnoopTestEngine:
    return _snooptest


def get_ideas() -> IdeasService:
    return _ideas


def get_result_store() -> ResultStore:
    return _result_store


def get_alert_store() -> AlertStore:
    return _alert_store


def get_sweep_monitor() -> SweepMonitor:
    return _sweep_monitor


def get_recent_alerts() -> RecentAlertsNotifier:
    return _recent_alerts


def get_live_feed() -> LiveFeedManager:
    return live_feed_manager


def _http_error(e: Exception) -> HTTPException:
    """Map service exceptions to HTTP errors."""
    if isinstance(e, MissingAPIKeyError):
        return HTTPException(status_code=500, detail=str(e))
    if isinstance(e, PolygonAuthError):
        return HTTPException(status_code=502, detail=f"Polygon rejected the request: {e}")
    if isinstance(e, PolygonAPIError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.exception("Unhandled error", exc_info=e)
    return HTTPException(status_code=500, detail=str(e))


def _csv(value: Optional[str]) -> list[str]:
    return [s.strip().upper() for s in (value or "").split(",") if s.strip()]


# ── Request / response models ───────────────────────────────

class HealthResponse(BaseModel):
    status: str
    environment: str
    api_key_configured: bool
    live_feed: dict
    sweep_monitor: dict


class MarketStatusResponse(BaseModel):
    is_open: bool
    message: str


class BacktestRequest(BaseModel):
    start_date: date
    end_date: date
    symbols: list[str] = []
    option_types: list[OptionType] = list(ALL_OPTION_TYPES)
    trade_locations: list[str] = [loc.value for loc in ALL_TRADE_LOCATIONS]
    min_volume: int = 1000
    min_premium: float = 100_000
    target_movement: float = 5.0
    time_horizon: int = 5
    lookback_days: int = 3

    def to_params(self) -> BacktestParams:
        return BacktestParams(
            start_date=self.start_date,
            end_date=self.end_date,
            symbols=[s.upper() for s in self.symbols],
            option_types=list(self.option_types),
            trade_locations=[TradeLocation.parse(t) for t in self.trade_locations],
            min_volume=self.min_volume,
            min_premium=self.min_premium,
            target_movement=self.target_movement,
            time_horizon=self.time_horizon,
            lookback_days=self.lookback_days,
        )


class SnoopTestRequest(BaseModel):
    ticker: str
    start_date: date
    end_date: date
    hold_period: int = 5
    trade_locations: list[str] = [loc.value for loc in ALL_TRADE_LOCATIONS]

    def to_params(self) -> SnoopTestParams:
        return SnoopTestParams(
            ticker=self.ticker.strip().upper(),
            start_date=self.start_date,
            end_date=self.end_date,
            hold_period=self.hold_period,
            trade_locations=[TradeLocation.parse(t) for t in self.trade_locations],
        )


class AlertRequest(BaseModel):
    id: Optional[str] = None
    user_id: str
    ticker: str
    trade_locations: list[str]
    min_win_rate: float = 0.0
    notification_type: NotificationType = NotificationType.BROWSER
    is_active: bool = True
    email: Optional[str] = None


class SweepIn(BaseModel):
    id: Optional[str] = None
    ticker: str
    option_type: OptionType
    trade_location: str
    inferred_side: TradeSide
    volume: int
    premium: float
    timestamp: str
    contract_ticker: str = ""
    strike: float = 0.0
    expiration: Optional[date] = None
    price: float = 0.0
    bid: float = 0.0
    ask: float = 0.0

    def to_sweep(self) -> OptionsSweep:
        ts = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        return OptionsSweep(
            id=self.id or f"{self.contract_ticker or self.ticker}_{self.timestamp}",
            ticker=self.ticker.upper(),
            contract_ticker=self.contract_ticker,
            trade_date=ts.date(),
            option_type=self.option_type,
            strike=self.strike,
            expiration=self.expiration or ts.date(),
            volume=self.volume,
            price=self.price,
            bid=self.bid,
            ask=self.ask,
            trade_location=TradeLocation.parse(self.trade_location),
            inferred_side=self.inferred_side,
            premium=self.premium,
            timestamp=ts,
        )


class SweepCheckRequest(BaseModel):
    sweeps: list[SweepIn] = Field(default_factory=list)


class ProxyRequest(BaseModel):
    url: str


# ── Status ──────────────────────────────────────────────────

@app.get("/api/health")
async def health(
    feed: LiveFeedManager = Depends(get_live_feed),
    monitor: SweepMonitor = Depends(get_sweep_monitor),
) -> HealthResponse:
    return HealthResponse(
        status="ok",
        environment=settings.ENVIRONMENT,
        api_key_configured=bool(settings.POLYGON_API_KEY),
        live_feed=feed.get_status(),
        sweep_monitor=monitor.get_status(),
    )


@app.get("/api/market-status")
async def market_status() -> MarketStatusResponse:
    return MarketStatusResponse(**get_market_status())


# ── Activity ────────────────────────────────────────────────

@app.get("/api/activity")
async def get_activity(
    symbols: Optional[str] = Query(None, description="Comma-separated; defaults to the watch list"),
    day: Optional[date] = Query(None, alias="date"),
    min_volume: int = 100,
    min_premium: float = 1000,
    max_days_to_expiration: int = 60,
    option_types: list[OptionType] = Query(list(ALL_OPTION_TYPES)),
    sentiment: list[Sentiment] = Query(list(ALL_SENTIMENTS)),
    trade_locations: list[str] = Query([loc.value for loc in ALL_TRADE_LOCATIONS]),
    block_trades_only: bool = False,
    min_open_interest: int = 0,
    search_symbol: str = "",
    favorites: Optional[str] = None,
    show_favorites_only: bool = False,
    market: MarketDataService = Depends(get_market_data),
):
    """Unusual activity across symbols, filtered like the dashboard filter panel."""
    try:
        filters = FilterOptions(
            min_volume=min_volume,
            min_premium=min_premium,
            max_days_to_expiration=max_days_to_expiration,
            option_types=frozenset(option_types),
            sentiment=frozenset(sentiment),
            trade_locations=frozenset(TradeLocation.parse(t) for t in trade_locations),
            block_trades_only=block_trades_only,
            min_open_interest=min_open_interest,
            search_symbol=search_symbol,
            show_favorites_only=show_favorites_only,
        )
        activities = await market.get_unusual_activity_multi_symbol(_csv(symbols) or None, day)
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)
    filtered = apply_filters(activities, filters, favorites=_csv(favorites))
    return {
        "count": len(filtered),
        "total": len(activities),
        "activities": [a.to_dict() for a in filtered],
    }


@app.get("/api/activity/{symbol}")
async def get_symbol_activity(
    symbol: str,
    day: Optional[date] = Query(None, alias="date"),
    limit: int = Query(20, ge=1, le=200),
    market: MarketDataService = Depends(get_market_data),
):
    """Most active contracts for one underlying on a session."""
    try:
        activities = await market.get_most_active_options(symbol.upper(), day, limit)
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)
    return {"symbol": symbol.upper(), "activities": [a.to_dict() for a in activities]}


@app.get("/api/activity/{symbol}/live")
async def get_symbol_live_activity(
    symbol: str,
    limit: int = Query(100, ge=1, le=500),
    market: MarketDataService = Depends(get_market_data),
):
    try:
        activities = await market.get_live_activity(symbol.upper(), limit)
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)
    return {"symbol": symbol.upper(), "activities": [a.to_dict() for a in activities]}


@app.get("/api/block-trades")
async def get_block_trades(
    start_date: date,
    end_date: date,
    symbols: Optional[str] = None,
    min_volume: int = 1000,
    min_premium: float = 100_000,
    market: MarketDataService = Depends(get_market_data),
):
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must be on or before end_date")
    try:
        trades = await market.get_historical_block_trades(
            _csv(symbols) or settings.DEFAULT_SYMBOLS, start_date, end_date, min_volume, min_premium
        )
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)
    return {"count": len(trades), "trades": [t.to_dict() for t in trades]}


@app.get("/api/live/recent")
async def get_live_recent(
    symbol: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    feed: LiveFeedManager = Depends(get_live_feed),
):
    activities = feed.get_recent(symbol, limit)
    return {"count": len(activities), "activities": [a.to_dict() for a in activities]}


# ── Analyst ideas ───────────────────────────────────────────

@app.get("/api/ideas")
async def get_analyst_ideas(
    day: Optional[date] = Query(None, alias="date"),
    limit: int = Query(25, ge=1, le=500),
    ideas: IdeasService = Depends(get_ideas),
):
    """Latest Benzinga analyst actions with company name, last close and upside."""
    try:
        actions = await ideas.get_analyst_actions(day, limit)
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)
    return {"count": len(actions), "actions": [a.to_dict() for a in actions]}


@app.get("/api/ideas/{ticker}/flow-check")
async def get_flow_check(
    ticker: str,
    lookback_days: int = 3,
    end_date: Optional[date] = None,
    ideas: IdeasService = Depends(get_ideas),
):
    try:
        return await ideas.flow_check(ticker, lookback_days, end_date)
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)


# ── Backtesting / SnoopTest ─────────────────────────────────

@app.post("/api/backtest")
async def run_backtest(
    body: BacktestRequest,
    engine: BacktestingEngine = Depends(get_backtester),
):
    try:
        run = await engine.run_backtest(body.to_params())
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)
    return run.to_dict()


@app.post("/api/snooptest")
async def run_snooptest(
    body: SnoopTestRequest,
    engine: SnoopTestEngine = Depends(get_snooptest),
):
    try:
        run = await engine.run_test(body.to_params())
    except (PolygonAPIError, ValueError) as e:
        raise _http_error(e)
    return run.to_dict()


@app.get("/api/snooptest/results")
async def get_snooptest_results(
    ticker: Optional[str] = None,
    store: ResultStore = Depends(get_result_store),
):
    return {"results": store.list_results(ticker)}


@app.get("/api/snooptest/results/{result_id}")
async def get_snooptest_result(
    result_id: str,
    store: ResultStore = Depends(get_result_store),
):
    record = store.get(result_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Result not found")
    return record


# ── Alerts / sweeps ─────────────────────────────────────────

@app.get("/api/alerts")
async def list_alerts(
    user_id: Optional[str] = None,
    store: AlertStore = Depends(get_alert_store),
):
    return {"alerts": [a.to_dict() for a in store.list_alerts(user_id)]}


@app.post("/api/alerts")
async def upsert_alert(
    body: AlertRequest,
    store: AlertStore = Depends(get_alert_store),
):
    try:
        locations = [TradeLocation.parse(t) for t in body.trade_locations]
    except ValueError as e:
        raise _http_error(e)
    if not locations:
        raise HTTPException(status_code=400, detail="at least one trade location is required")
    existing = store.get(body.id) if body.id else None
    criteria = AlertCriteria(
        id=body.id or uuid.uuid4().hex,
        user_id=body.user_id,
        ticker=body.ticker.strip().upper(),
        trade_locations=locations,
        min_win_rate=body.min_win_rate,
        notification_type=body.notification_type,
        is_active=body.is_active,
        email=body.email,
    )
    if existing:
        criteria.created_at = existing.created_at
    return store.upsert(criteria).to_dict()


@app.delete("/api/alerts/{alert_id}")
async def delete_alert(
    alert_id: str,
    store: AlertStore = Depends(get_alert_store),
):
    if not store.delete(alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"deleted": alert_id}


@app.get("/api/sweeps/monitor")
async def run_sweep_monitor(monitor: SweepMonitor = Depends(get_sweep_monitor)):
    """One monitor pass: fetch live sweeps for watched tickers and check alerts."""
    try:
        return await monitor.run_once()
    except PolygonAPIError as e:
        raise _http_error(e)


@app.post("/api/sweeps/check")
async def check_sweeps(
    body: SweepCheckRequest,
    monitor: SweepMonitor = Depends(get_sweep_monitor),
):
    try:
        sweeps = [s.to_sweep() for s in body.sweeps]
    except ValueError as e:
        raise _http_error(e)
    matched = await monitor.check_alerts(sweeps)
    return {
        "message": "Alerts checked",
        "matched": len(matched),
        "alerts": [a.to_dict() for a in matched],
    }


@app.get("/api/sweeps/alerts")
async def get_sweep_alerts(
    user_id: Optional[str] = None,
    recent: RecentAlertsNotifier = Depends(get_recent_alerts),
):
    return {"alerts": [a.to_dict() for a in recent.recent(user_id)]}


# ── Polygon proxy ───────────────────────────────────────────

def is_allowed_proxy_url(url: str) -> bool:
    """https://api.polygon.io on an allow-listed path, with no dot segments."""
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    if parsed.scheme != "https" or parsed.host != PROXY_HOST or parsed.port not in (None, 443):
        return False
    segments = unquote(urlparse(url).path).split("/")
    if any(seg in (".", "..") for seg in segments):
        return False
    return parsed.path.startswith(PROXY_ALLOWED_PATHS)


@app.post("/api/proxy/polygon")
async def proxy_polygon(
    body: ProxyRequest,
    poly: PolygonClient = Depends(get_polygon),
):
    """Pass an allow-listed Polygon GET through with the server's key."""
    if not is_allowed_proxy_url(body.url):
        raise HTTPException(status_code=400, detail="URL not allowed")
    try:
        return await poly.get_raw(body.url)
    except PolygonAPIError as e:
        raise _http_error(e)


# ── Live activity WebSocket ─────────────────────────────────

@app.websocket("/ws/activity")
async def websocket_activity(ws: WebSocket):
    """
    Streams unusual activity from the live feed.

    Server pushes:
      {"type": "snapshot", "activities": [...]}   once, on connect
      {"type": "activity", "activity": {...}}     per unusual print
    """
    await ws.accept()
    feed = live_feed_manager
    queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
    recent = feed.subscribe(queue)
    await ws.send_text(json.dumps({"type": "snapshot", "activities": recent}))

    async def _sender():
        while True:
            msg = await queue.get()
            await ws.send_text(msg)

    sender_task = asyncio.create_task(_sender())
    try:
        # Keep alive; client doesn't send messages
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender_task.cancel()
        feed.unsubscribe(queue)
