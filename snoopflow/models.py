"""
Domain records shared by the data client, classifier and engines.
All records are plain dataclasses; enums are str-valued so they
serialise directly into API payloads.
"""
from dataclasses import dataclass, field, asdict, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


# ── Enumerations ────────────────────────────────────────────

class OptionType(str, Enum):
    CALL = "call"
    PUT = "put"

    @classmethod
    def parse(cls, value) -> "OptionType":
        if isinstance(value, cls):
            return value
        v = str(value).strip().lower()
        if v in ("c", "call"):
            return cls.CALL
        if v in ("p", "put"):
            return cls.PUT
        raise ValueError(f"Unknown option type: {value!r}")


class Sentiment(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class TradeLocation(str, Enum):
    BELOW_BID = "below_bid"
    AT_BID = "at_bid"
    MIDPOINT = "midpoint"
    AT_ASK = "at_ask"
    ABOVE_ASK = "above_ask"

    @classmethod
    def parse(cls, value) -> "TradeLocation":
        """Accepts both 'at_ask' and 'at-ask' spellings."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower().replace("-", "_"))


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"
    NEUTRAL = "neutral"


class NotificationType(str, Enum):
    EMAIL = "email"
    BROWSER = "browser"


ALL_OPTION_TYPES = (OptionType.CALL, OptionType.PUT)
ALL_SENTIMENTS = (Sentiment.BULLISH, Sentiment.BEARISH, Sentiment.NEUTRAL)
ALL_TRADE_LOCATIONS = tuple(TradeLocation)


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Record:
    """Mixin: dataclass → JSON-ready dict."""

    def to_dict(self) -> dict:
        return {f.name: _jsonable(getattr(self, f.name)) for f in fields(self)}


# ── Market data ─────────────────────────────────────────────

@dataclass
class OptionsContract(_Record):
    ticker: str
    underlying: str
    type: OptionType
    strike: float
    expiration: date

    @classmethod
    def from_polygon(cls, raw: dict) -> "OptionsContract":
        return cls(
            ticker=raw["ticker"],
            underlying=raw.get("underlying_ticker", ""),
            type=OptionType.parse(raw.get("contract_type", "call")),
            strike=float(raw.get("strike_price", 0.0)),
            expiration=date.fromisoformat(raw["expiration_date"]),
        )


@dataclass
class OptionsActivity(_Record):
    id: str
    symbol: str
    strike: float
    expiration: date
    type: OptionType
    volume: int
    open_interest: int
    last_price: float
    bid: float
    ask: float
    trade_location: TradeLocation
    implied_volatility: float
    delta: float
    gamma: float
    theta: float
    vega: float
    premium: float
    timestamp: datetime
    unusual: bool
    block_trade: bool
    sentiment: Sentiment
    contract_ticker: str = ""


# ── Backtesting ─────────────────────────────────────────────

DEFAULT_BACKTEST_SYMBOLS = ["AAPL", "TSLA", "NVDA", "MSFT", "AMZN", "GOOGL", "META", "SPY", "QQQ"]


@dataclass
class BacktestParams:
    start_date: date
    end_date: date
    symbols: list[str] = field(default_factory=list)
    option_types: list[OptionType] = field(default_factory=lambda: list(ALL_OPTION_TYPES))
    trade_locations: list[TradeLocation] = field(default_factory=lambda: list(ALL_TRADE_LOCATIONS))
    min_volume: int = 1000
    min_premium: float = 100_000
    target_movement: float = 5.0   # percent
    time_horizon: int = 5          # calendar days
    lookback_days: int = 3


@dataclass
class BacktestTrade(_Record):
    id: str
    symbol: str
    strike: float
    expiration: date
    type: OptionType
    trade_location: TradeLocation
    volume: int
    premium: float
    trade_date: date
    trade_price: float
    underlying_price: float
    implied_volatility: float
    delta: float


@dataclass
class BacktestResult(_Record):
    trade_id: str
    symbol: str
    trade_date: date
    type: OptionType
    trade_location: TradeLocation
    premium: float
    underlying_price_at_trade: float
    underlying_price_at_target: float
    stock_movement: float
    target_reached: bool
    days_to_target: int
    actual_days: int


@dataclass
class RateBucket(_Record):
    total: int = 0
    successful: int = 0
    rate: float = 0.0


@dataclass
class BacktestSummary(_Record):
    total_trades: int
    successful_trades: int
    success_rate: float
    average_stock_movement: float
    average_days_to_target: float
    best_trade: Optional[BacktestResult]
    worst_trade: Optional[BacktestResult]
    breakdown_by_type: dict[str, RateBucket]
    breakdown_by_premium: dict[str, RateBucket]
    breakdown_by_symbol: dict[str, RateBucket]

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["best_trade"] = self.best_trade.to_dict() if self.best_trade else None
        d["worst_trade"] = self.worst_trade.to_dict() if self.worst_trade else None
        for key in ("breakdown_by_type", "breakdown_by_premium", "breakdown_by_symbol"):
            d[key] = {k: asdict(v) for k, v in getattr(self, key).items()}
        return d


# ── SnoopTest (sweep replay) ────────────────────────────────

@dataclass
class SnoopTestParams:
    ticker: str
    start_date: date
    end_date: date
    hold_period: int = 5
    trade_locations: list[TradeLocation] = field(default_factory=lambda: list(ALL_TRADE_LOCATIONS))


@dataclass
class OptionsSweep(_Record):
    id: str
    ticker: str
    contract_ticker: str
    trade_date: date
    option_type: OptionType
    strike: float
    expiration: date
    volume: int
    price: float
    bid: float
    ask: float
    trade_location: TradeLocation
    inferred_side: TradeSide
    premium: float
    timestamp: datetime


@dataclass
class SnoopTestResult(_Record):
    id: str
    date: date
    ticker: str
    option_type: OptionType
    trade_location: TradeLocation
    inferred_side: TradeSide
    entry_price: float
    exit_price: float
    percent_change: float
    is_win: bool
    hold_days: int


@dataclass
class LocationBreakdown(_Record):
    total: int = 0
    wins: int = 0
    win_rate: float = 0.0
    avg_move: float = 0.0


@dataclass
class SnoopTestSummary(_Record):
    total_trades: int
    neutral_trades: int
    non_neutral_trades: int
    wins: int
    losses: int
    win_rate: float
    average_move: float
    best_trade: Optional[SnoopTestResult]
    worst_trade: Optional[SnoopTestResult]
    breakdown_by_location: dict[str, LocationBreakdown]

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["best_trade"] = self.best_trade.to_dict() if self.best_trade else None
        d["worst_trade"] = self.worst_trade.to_dict() if self.worst_trade else None
        d["breakdown_by_location"] = {
            k: asdict(v) for k, v in self.breakdown_by_location.items()
        }
        return d


# ── Alerts ──────────────────────────────────────────────────

@dataclass
class AlertCriteria(_Record):
    id: str
    user_id: str
    ticker: str
    trade_locations: list[TradeLocation]
    min_win_rate: float = 0.0
    notification_type: NotificationType = NotificationType.BROWSER
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    email: Optional[str] = None


@dataclass
class SweepAlert(_Record):
    criteria_id: str
    user_id: str
    sweep: OptionsSweep
    notification_type: NotificationType
    matched_at: datetime = field(default_factory=_utcnow)
    email: Optional[str] = None

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["sweep"] = self.sweep.to_dict()
        return d


# ── Analyst ideas ───────────────────────────────────────────

@dataclass
class AnalystAction(_Record):
    id: str
    ticker: str
    company: str
    action_type: str
    analyst_firm: str
    action_date: date
    rating: str
    previous_target: Optional[float] = None
    new_target: Optional[float] = None
    previous_rating: Optional[str] = None
    new_rating: Optional[str] = None
    current_price: Optional[float] = None
    upside_pct: Optional[float] = None
