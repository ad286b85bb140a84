"""
Analyst Ideas
=============
Benzinga analyst ratings turned into trade ideas, enriched with the
company name and the last close, plus a per-ticker "flow check" that
looks for recent options block trades backing the idea.
"""
from datetime import date, timedelta
from typing import Optional
import logging
import re

from snoopflow.config import settings
from snoopflow.market_data import MarketDataService
from snoopflow.market_hours import previous_trading_day, today_et
from snoopflow.models import AnalystAction, OptionType
from snoopflow.polygon_client import MissingAPIKeyError, PolygonAPIError, PolygonClient

logger = logging.getLogger("snoopflow.ideas")

FLOW_CHECK_LIMIT = 15
MAX_FLOW_LOOKBACK_DAYS = 10

_FROM_PRICE = re.compile(r"from\s*\$?(\d+(?:\.\d+)?)", re.IGNORECASE)
_TO_PRICE = re.compile(r"to\s*\$?(\d+(?:\.\d+)?)", re.IGNORECASE)
_FROM_TO_RATING = re.compile(r"from\s+([A-Za-z ]+?)\s+to\s+([A-Za-z ]+)$", re.IGNORECASE)


# ── Rating parsing ──────────────────────────────────────────

def format_action_type(rating: dict) -> str:
    """Human label: "Upgrade by Morgan Stanley", "Price Target Raised from $150 to $180 by …"."""
    action = (rating.get("action_type") or rating.get("rating_action") or "").lower()
    firm = rating.get("firm") or "Unknown Firm"

    if "upgrade" in action:
        return f"Upgrade by {firm}"
    if "downgrade" in action:
        return f"Downgrade by {firm}"
    if "initiate" in action or "coverage" in action:
        return f"Coverage Initiated by {firm}"
    if rating.get("price_target_change"):
        return f"Price Target {rating['price_target_change']} by {firm}"
    if rating.get("rating_change"):
        return f"Rating {rating['rating_change']} by {firm}"
    label = rating.get("action_type") or rating.get("rating_action") or "Unknown Action"
    return f"{label} by {firm}"


def _float(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def extract_previous_target(rating: dict) -> Optional[float]:
    if rating.get("previous_price_target") is not None:
        return _float(rating["previous_price_target"])
    m = _FROM_PRICE.search(rating.get("price_target_change") or "")
    return float(m.group(1)) if m else None


def extract_new_target(rating: dict) -> Optional[float]:
    if rating.get("price_target") is not None:
        return _float(rating["price_target"])
    m = _TO_PRICE.search(rating.get("price_target_change") or "")
    return float(m.group(1)) if m else None


def extract_ratings(rating: dict) -> tuple[Optional[str], Optional[str]]:
    """(previous, new) rating, e.g. ("Hold", "Buy")."""
    if rating.get("previous_rating") or rating.get("rating"):
        return rating.get("previous_rating") or None, rating.get("rating") or None
    m = _FROM_TO_RATING.search((rating.get("rating_change") or "").strip())
    if not m:
        return None, None
    return m.group(1).strip(), m.group(2).strip()


def analyst_action_from_rating(rating: dict, index: int, day: date) -> AnalystAction:
    ticker = (rating.get("ticker") or "UNKNOWN").upper()
    try:
        action_date = date.fromisoformat(str(rating.get("date"))[:10])
    except ValueError:
        action_date = day
    previous_rating, new_rating = extract_ratings(rating)
    return AnalystAction(
        id=str(rating.get("benzinga_id") or rating.get("id") or f"{ticker}_{action_date}_{index}"),
        ticker=ticker,
        company=ticker,
        action_type=format_action_type(rating),
        analyst_firm=rating.get("firm") or "Unknown Firm",
        action_date=action_date,
        rating=rating.get("rating_change") or rating.get("rating_action")
        or rating.get("action_type") or "Unknown",
        previous_target=extract_previous_target(rating),
        new_target=extract_new_target(rating),
        previous_rating=previous_rating,
        new_rating=new_rating,
    )


# ── Service ─────────────────────────────────────────────────

class IdeasService:
    def __init__(
        self,
        polygon: PolygonClient,
        market: MarketDataService,
        *,
        lookback_days: Optional[int] = None,
    ):
        self._poly = polygon
        self._market = market
        self.lookback_days = (
            settings.IDEAS_LOOKBACK_DAYS if lookback_days is None else lookback_days
        )

    async def _company_name(self, ticker: str) -> str:
        try:
            details = await self._poly.get_ticker_details(ticker)
        except MissingAPIKeyError:
            raise
        except PolygonAPIError as e:
            logger.warning("Company info failed for %s: %s", ticker, e)
            return ticker
        return (details or {}).get("name") or ticker

    async def _last_close(self, ticker: str) -> Optional[float]:
        try:
            bar = await self._poly.get_previous_close(ticker)
        except MissingAPIKeyError:
            raise
        except PolygonAPIError as e:
            logger.warning("Previous close failed for %s: %s", ticker, e)
            return None
        return _float((bar or {}).get("c")) or None

    async def get_analyst_actions(
        self, day: Optional[date] = None, limit: int = 25
    ) -> list[AnalystAction]:
        """Latest analyst actions (falling back over recent days), enriched per ticker."""
        day = day or today_et()
        ratings = await self._poly.get_benzinga_ratings(day, lookback_days=self.lookback_days)
        actions = [
            analyst_action_from_rating(r, i, day) for i, r in enumerate(ratings[:limit])
        ]

        enrichment: dict[str, tuple[str, Optional[float]]] = {}
        for ticker in dict.fromkeys(a.ticker for a in actions if a.ticker != "UNKNOWN"):
            enrichment[ticker] = (await self._company_name(ticker), await self._last_close(ticker))

        for a in actions:
            a.company, a.current_price = enrichment.get(a.ticker, (a.ticker, None))
            if a.current_price and a.new_target:
                a.upside_pct = round((a.new_target / a.current_price - 1) * 100, 2)
        logger.info("Built %d analyst ideas for %s", len(actions), day)
        return actions

    async def flow_check(
        self,
        ticker: str,
        lookback_days: int = 3,
        end_date: Optional[date] = None,
    ) -> dict:
        """
        Options block trades on `ticker` over the last `lookback_days`
        sessions' window, largest premium first, with call/put totals.
        """
        if not 0 <= lookback_days <= MAX_FLOW_LOOKBACK_DAYS:
            raise ValueError(f"lookback_days must be between 0 and {MAX_FLOW_LOOKBACK_DAYS}")
        ticker = ticker.strip().upper()
        if not ticker:
            raise ValueError("ticker is required")
        end_date = end_date or previous_trading_day()
        start_date = end_date - timedelta(days=lookback_days)

        t = self._market.thresholds
        trades = await self._market.get_historical_block_trades(
            [ticker], start_date, end_date, t.block_volume, t.block_premium
        )
        call_premium = sum(x.premium for x in trades if x.type is OptionType.CALL)
        put_premium = sum(x.premium for x in trades if x.type is OptionType.PUT)
        return {
            "ticker": ticker,
            "company": await self._company_name(ticker),
            "price": await self._last_close(ticker),
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "block_trades": len(trades),
            "call_premium": call_premium,
            "put_premium": put_premium,
            "trades": [x.to_dict() for x in trades[:FLOW_CHECK_LIMIT]],
        }
