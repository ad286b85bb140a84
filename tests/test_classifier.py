"""
Pytest tests for the unusual-activity classifier.
Tests: premium, unusual / block thresholds and their monotonicity,
       sentiment, spread location, inferred side, expected direction.
"""
import pytest

from snoopflow.classifier import (
    DEFAULT_THRESHOLDS,
    ClassifierThresholds,
    calculate_premium,
    calculate_sentiment,
    detect_unusual_activity,
    expected_direction,
    get_trade_location,
    infer_trade_side,
    is_block_trade,
)
from snoopflow.models import OptionType, Sentiment, TradeLocation, TradeSide

VOLUMES = [0, 1, 50, 99, 100, 249, 250, 1000, 10_000]
PREMIUMS = [0.0, 500.0, 9_999.0, 10_000.0, 24_999.0, 25_000.0, 250_000.0]
DELTAS = [-1.0, -0.5, -0.31, -0.3, -0.1, 0.0, 0.1, 0.3, 0.31, 0.5, 1.0]


class TestPremium:
    def test_contract_multiplier(self):
        assert calculate_premium(10, 2.5) == 2500.0

    def test_zero_volume(self):
        assert calculate_premium(0, 9.99) == 0.0


class TestUnusual:
    def test_volume_floor(self):
        assert detect_unusual_activity(100, 0)
        assert not detect_unusual_activity(99, 9_999)

    def test_premium_floor(self):
        assert detect_unusual_activity(1, 10_000)

    def test_volume_vs_average(self):
        assert detect_unusual_activity(50, 1000, avg_volume=20)
        assert not detect_unusual_activity(30, 1000, avg_volume=20)

    def test_volume_vs_open_interest(self):
        assert detect_unusual_activity(50, 1000, open_interest=80)
        assert not detect_unusual_activity(50, 1000, open_interest=200)

    @pytest.mark.parametrize("volume", VOLUMES)
    @pytest.mark.parametrize("premium", PREMIUMS)
    @pytest.mark.parametrize("open_interest", [0, 50, 5000])
    def test_monotone_in_volume_and_premium(self, volume, premium, open_interest):
        if detect_unusual_activity(volume, premium, open_interest):
            for v in VOLUMES:
                for p in PREMIUMS:
                    if v >= volume and p >= premium:
                        assert detect_unusual_activity(v, p, open_interest)

    def test_custom_thresholds(self):
        t = ClassifierThresholds(unusual_volume=1000, unusual_premium=1_000_000)
        assert not detect_unusual_activity(500, 50_000, t=t)


class TestBlockTrade:
    def test_volume_floor(self):
        assert is_block_trade(250, 0)
        assert not is_block_trade(249, 24_999)

    def test_premium_floor(self):
        assert is_block_trade(1, 25_000)

    @pytest.mark.parametrize("volume", VOLUMES)
    @pytest.mark.parametrize("premium", PREMIUMS)
    def test_block_implies_unusual(self, volume, premium):
        if is_block_trade(volume, premium):
            assert detect_unusual_activity(volume, premium)

    @pytest.mark.parametrize("volume", VOLUMES)
    @pytest.mark.parametrize("premium", PREMIUMS)
    def test_monotone(self, volume, premium):
        if is_block_trade(volume, premium):
            assert is_block_trade(volume + 1, premium)
            assert is_block_trade(volume, premium + 1)


class TestSentiment:
    def test_high_delta_call_bullish(self):
        assert calculate_sentiment(OptionType.CALL, 0.5, 10) is Sentiment.BULLISH

    def test_low_delta_put_bearish(self):
        assert calculate_sentiment(OptionType.PUT, -0.5, 10) is Sentiment.BEARISH

    def test_small_far_otm_is_neutral(self):
        assert calculate_sentiment(OptionType.CALL, 0.1, 100) is Sentiment.NEUTRAL
        assert calculate_sentiment(OptionType.PUT, -0.1, 100) is Sentiment.NEUTRAL

    def test_heavy_volume_falls_back_to_type(self):
        assert calculate_sentiment(OptionType.CALL, 0.0, 500) is Sentiment.BULLISH
        assert calculate_sentiment(OptionType.PUT, 0.0, 500) is Sentiment.BEARISH

    def test_accepts_string_type(self):
        assert calculate_sentiment("call", 0.9, 0) is Sentiment.BULLISH

    @pytest.mark.parametrize("option_type", [OptionType.CALL, OptionType.PUT])
    @pytest.mark.parametrize("delta", DELTAS)
    @pytest.mark.parametrize("volume", VOLUMES)
    def test_always_one_of_three(self, option_type, delta, volume):
        s = calculate_sentiment(option_type, delta, volume)
        assert s in (Sentiment.BULLISH, Sentiment.BEARISH, Sentiment.NEUTRAL)
        if option_type is OptionType.CALL:
            assert s is not Sentiment.BEARISH
        else:
            assert s is not Sentiment.BULLISH


class TestTradeLocation:
    @pytest.mark.parametrize("price,expected", [
        (0.90, TradeLocation.BELOW_BID),
        (1.00, TradeLocation.AT_BID),
        (1.005, TradeLocation.AT_BID),
        (1.05, TradeLocation.MIDPOINT),
        (1.095, TradeLocation.AT_ASK),
        (1.10, TradeLocation.AT_ASK),
        (1.20, TradeLocation.ABOVE_ASK),
    ])
    def test_bands(self, price, expected):
        assert get_trade_location(price, 1.00, 1.10) is expected

    def test_locked_market(self):
        assert get_trade_location(1.0, 1.0, 1.0) is TradeLocation.AT_BID

    def test_wider_band(self):
        t = ClassifierThresholds(location_band=0.4)
        assert get_trade_location(1.03, 1.00, 1.10, t) is TradeLocation.AT_BID
        assert get_trade_location(1.03, 1.00, 1.10, DEFAULT_THRESHOLDS) is TradeLocation.MIDPOINT


class TestSide:
    @pytest.mark.parametrize("location,side", [
        (TradeLocation.ABOVE_ASK, TradeSide.BUY),
        (TradeLocation.AT_ASK, TradeSide.BUY),
        (TradeLocation.MIDPOINT, TradeSide.NEUTRAL),
        (TradeLocation.AT_BID, TradeSide.SELL),
        (TradeLocation.BELOW_BID, TradeSide.SELL),
    ])
    def test_side_from_location(self, location, side):
        assert infer_trade_side(location) is side

    def test_hyphenated_location(self):
        assert infer_trade_side("at-ask") is TradeSide.BUY

    @pytest.mark.parametrize("option_type,side,direction", [
        (OptionType.CALL, TradeSide.BUY, 1),
        (OptionType.PUT, TradeSide.BUY, -1),
        (OptionType.CALL, TradeSide.SELL, -1),
        (OptionType.PUT, TradeSide.SELL, 1),
        (OptionType.CALL, TradeSide.NEUTRAL, 0),
    ])
    def test_expected_direction(self, option_type, side, direction):
        assert expected_direction(option_type, side) == direction
