"""
Unusual-Activity Classifier
============================
Pure threshold functions that label an options print or daily
contract aggregate:

* unusual      – fixed volume / premium floors, plus optional
                 volume-vs-average and volume-vs-OI ratios
* block trade  – larger volume / premium floors
* sentiment    – delta-driven, falling back to the option type
* location     – where the print sits in the bid/ask spread
* side         – buy / sell / neutral inferred from the location

Every call site shares one `ClassifierThresholds` instance so the
labels stay consistent across scans, the live feed and the engines.
"""
from dataclasses import dataclass

from snoopflow.models import OptionType, Sentiment, TradeLocation, TradeSide

CONTRACT_MULTIPLIER = 100


@dataclass(frozen=True)
class ClassifierThresholds:
    """Tuneable thresholds – pass to the classifier functions to customise."""
    unusual_volume: int = 100
    unusual_premium: float = 10_000
    volume_ratio: float = 2.0       # volume ≥ 2× average
    oi_ratio: float = 0.5           # volume ≥ 50% of open interest
    block_volume: int = 250
    block_premium: float = 25_000
    sentiment_delta: float = 0.3
    sentiment_min_volume: int = 500
    location_band: float = 0.1      # 10% of the spread at each edge

    @classmethod
    def from_settings(cls, s) -> "ClassifierThresholds":
        return cls(
            unusual_volume=s.UNUSUAL_MIN_VOLUME,
            unusual_premium=s.UNUSUAL_MIN_PREMIUM,
            block_volume=s.BLOCK_MIN_VOLUME,
            block_premium=s.BLOCK_MIN_PREMIUM,
        )


DEFAULT_THRESHOLDS = ClassifierThresholds()


def calculate_premium(volume: float, price: float) -> float:
    """Total dollars paid: contracts × price × 100 shares."""
    return float(volume) * float(price) * CONTRACT_MULTIPLIER


def detect_unusual_activity(
    volume: float,
    premium: float,
    open_interest: float = 0,
    avg_volume: float = 0,
    t: ClassifierThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    if volume >= t.unusual_volume or premium >= t.unusual_premium:
        return True
    if avg_volume > 0 and volume / avg_volume >= t.volume_ratio:
        return True
    if open_interest > 0 and volume / open_interest >= t.oi_ratio:
        return True
    return False


def is_block_trade(
    volume: float, premium: float, t: ClassifierThresholds = DEFAULT_THRESHOLDS
) -> bool:
    return volume >= t.block_volume or premium >= t.block_premium


def calculate_sentiment(
    option_type: OptionType,
    delta: float,
    volume: float,
    t: ClassifierThresholds = DEFAULT_THRESHOLDS,
) -> Sentiment:
    option_type = OptionType.parse(option_type)
    if option_type is OptionType.CALL and delta > t.sentiment_delta:
        return Sentiment.BULLISH
    if option_type is OptionType.PUT and delta < -t.sentiment_delta:
        return Sentiment.BEARISH
    if volume < t.sentiment_min_volume:
        return Sentiment.NEUTRAL
    return Sentiment.BULLISH if option_type is OptionType.CALL else Sentiment.BEARISH


def get_trade_location(
    price: float, bid: float, ask: float, t: ClassifierThresholds = DEFAULT_THRESHOLDS
) -> TradeLocation:
    """
    Place a print relative to the quote. Prints outside the quote are
    below-bid / above-ask; prints within `location_band` of the spread
    from either edge are at-bid / at-ask; everything else is midpoint.
    """
    if price < bid:
        return TradeLocation.BELOW_BID
    if price > ask:
        return TradeLocation.ABOVE_ASK
    band = (ask - bid) * t.location_band
    if price <= bid + band:
        return TradeLocation.AT_BID
    if price >= ask - band:
        return TradeLocation.AT_ASK
    return TradeLocation.MIDPOINT


def infer_trade_side(location: TradeLocation) -> TradeSide:
    location = TradeLocation.parse(location)
    if location in (TradeLocation.AT_ASK, TradeLocation.ABOVE_ASK):
        return TradeSide.BUY
    if location in (TradeLocation.AT_BID, TradeLocation.BELOW_BID):
        return TradeSide.SELL
    return TradeSide.NEUTRAL


def expected_direction(option_type: OptionType, side: TradeSide) -> int:
    """
    +1 if the position profits from the stock rising, -1 if falling,
    0 for neutral prints. Bought calls and sold puts are bullish;
    bought puts and sold calls are bearish.
    """
    if side is TradeSide.NEUTRAL:
        return 0
    bullish = (option_type is OptionType.CALL) == (side is TradeSide.BUY)
    return 1 if bullish else -1
