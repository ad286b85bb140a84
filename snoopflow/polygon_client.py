"""
Polygon.io REST Client - options contracts, aggregates, snapshots, trades, quotes,
ticker reference data and Benzinga analyst ratings.
Fully async with TTL caching, pagination, 429 retry and a shared rate limiter.
Docs: https://polygon.io/docs/options
"""
from datetime import datetime, date, timedelta, timezone
from typing import Optional
import asyncio
import logging
import re

import httpx
import pandas as pd
from cachetools import TTLCache

from snoopflow.config import settings
from snoopflow.models import OptionType, OptionsContract
from snoopflow.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger("snoopflow.polygon")

BAR_COLUMNS = ["date", "open", "high", "low", "close", "volume", "vwap"]

_OCC_RE = re.compile(r"^O:([A-Z0-9.]+?)(\d{6})([CP])(\d{8})$")

# current path first, then the legacy one
RATINGS_PATHS = ("/benzinga/v1/ratings", "/v1/benzinga/ratings")


class PolygonAPIError(Exception):
    """Non-success response (or transport failure) from Polygon."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PolygonAuthError(PolygonAPIError):
    """401/403 – bad key or the plan does not cover the endpoint."""


class MissingAPIKeyError(PolygonAPIError):
    pass


# ── OCC option ticker codec ─────────────────────────────────

def format_option_ticker(
    symbol: str, expiration: date, strike: float, option_type
) -> str:
    """
    Format option ticker in OCC format.
    Example: O:AAPL240216C00150000
    """
    right = "C" if OptionType.parse(option_type) is OptionType.CALL else "P"
    exp_str = expiration.strftime("%y%m%d")
    strike_str = f"{int(round(strike * 1000)):08d}"
    return f"O:{symbol.upper()}{exp_str}{right}{strike_str}"


def parse_option_ticker(ticker: str) -> dict:
    """
    Inverse of `format_option_ticker`.
    Returns {underlying, expiration, type, strike}; raises ValueError
    when the ticker is not an OCC option symbol.
    """
    m = _OCC_RE.match(ticker or "")
    if not m:
        raise ValueError(f"Not an OCC option ticker: {ticker!r}")
    underlying, exp, right, strike = m.groups()
    return {
        "underlying": underlying,
        "expiration": datetime.strptime(exp, "%y%m%d").date(),
        "type": OptionType.CALL if right == "C" else OptionType.PUT,
        "strike": int(strike) / 1000.0,
    }


def _mask(key: str) -> str:
    if len(key) <= 4:
        return "****"
    return f"{key[:2]}…{key[-2:]}"


class PolygonClient:
    """
    Async Polygon.io client with TTL caching and automatic pagination.
    All requests pass through one sliding-window rate limiter.
    """

    BASE_URL = "https://api.polygon.io"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.api_key = settings.POLYGON_API_KEY if api_key is None else api_key
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS
        )
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

        # Caches keyed by request signature
        self._contracts_cache: TTLCache = TTLCache(
            maxsize=256, ttl=settings.CACHE_TTL_CONTRACTS
        )
        self._aggs_cache: TTLCache = TTLCache(
            maxsize=1024, ttl=settings.CACHE_TTL_AGGREGATES
        )
        self._snapshot_cache: TTLCache = TTLCache(
            maxsize=128, ttl=settings.CACHE_TTL_SNAPSHOTS
        )
        self._price_cache: TTLCache = TTLCache(
            maxsize=256, ttl=settings.CACHE_TTL_PRICES
        )
        self._ratings_cache: TTLCache = TTLCache(
            maxsize=32, ttl=settings.CACHE_TTL_RATINGS
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise MissingAPIKeyError(
                "POLYGON_API_KEY is not configured. Set it in the environment or .env."
            )
        if self._client is None or self._client.is_closed:
            logger.debug("Opening Polygon HTTP client (key %s)", _mask(self.api_key))
            self._client = httpx.AsyncClient(
                timeout=30.0,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── helpers ──────────────────────────────────────────────

    async def _send(self, url: str, params: dict | None) -> httpx.Response:
        await self.rate_limiter.throttle()
        try:
            return await self.client.get(url, params=params)
        except httpx.RequestError as e:
            raise PolygonAPIError(f"Polygon request failed: {e}") from e

    @staticmethod
    def _check(resp: httpx.Response) -> dict:
        code = resp.status_code
        if code in (401, 403):
            raise PolygonAuthError(
                "Invalid API key or insufficient permissions. "
                "This endpoint may require a paid Polygon subscription.",
                code,
            )
        if code == 404:
            return {}
        if code >= 400:
            raise PolygonAPIError(f"Polygon API error ({code}): {resp.text[:200]}", code)
        return resp.json()

    async def _get_json(
        self, url: str, params: dict | None = None, *, _retries: int = 3
    ) -> dict:
        """
        Make an authenticated GET request and return JSON.
        Retries on 429 with short backoff.
        """
        for attempt in range(_retries):
            resp = await self._send(url, params)
            if resp.status_code == 429:
                wait = 2 * (attempt + 1)  # 2s, 4s, 6s
                logger.warning("Polygon 429 on %s – retrying in %ss", url, wait)
                await self._sleep(wait)
                continue
            return self._check(resp)
        # Final attempt – let it raise
        resp = await self._send(url, params)
        return self._check(resp)

    async def _get_all_pages(
        self, url: str, params: dict, max_results: Optional[int] = None
    ) -> list[dict]:
        """
        Follow Polygon pagination – keeps fetching `next_url` until exhausted
        (or `max_results` is reached). Returns the combined `results` list.
        """
        all_results: list[dict] = []
        while url:
            data = await self._get_json(url, params)
            all_results.extend(data.get("results", []) or [])
            if max_results is not None and len(all_results) >= max_results:
                return all_results[:max_results]
            next_url = data.get("next_url")
            if next_url:
                # next_url already includes query params
                url = next_url
                params = {}
            else:
                break
        return all_results

    async def get_raw(self, url: str) -> dict:
        """GET an absolute Polygon URL (used by the proxy endpoint)."""
        return await self._get_json(url)

    # ── Contracts ────────────────────────────────────────────

    async def get_options_contracts(
        self,
        underlying: str,
        *,
        as_of: Optional[date] = None,
        expiration_gte: Optional[date] = None,
        expiration_lte: Optional[date] = None,
        contract_type: Optional[OptionType] = None,
        max_results: Optional[int] = None,
    ) -> list[OptionsContract]:
        """List option contracts of an underlying (cached, paginated)."""
        cache_key = (
            underlying.upper(), as_of, expiration_gte, expiration_lte,
            contract_type, max_results,
        )
        if cache_key in self._contracts_cache:
            return self._contracts_cache[cache_key]

        params: dict = {
            "underlying_ticker": underlying.upper(),
            "sort": "expiration_date",
            "order": "asc",
            "limit": 1000,
        }
        if as_of:
            params["as_of"] = as_of.isoformat()
        if expiration_gte:
            params["expiration_date.gte"] = expiration_gte.isoformat()
        if expiration_lte:
            params["expiration_date.lte"] = expiration_lte.isoformat()
        if contract_type:
            params["contract_type"] = OptionType.parse(contract_type).value

        url = f"{self.BASE_URL}/v3/reference/options/contracts"
        raw = await self._get_all_pages(url, params, max_results)

        contracts = []
        for item in raw:
            try:
                contracts.append(OptionsContract.from_polygon(item))
            except (KeyError, ValueError) as e:
                logger.debug("Skipping malformed contract %s: %s", item.get("ticker"), e)
        self._contracts_cache[cache_key] = contracts
        return contracts

    # ── Aggregates ───────────────────────────────────────────

    async def get_aggregates(
        self, ticker: str, start_date: date, end_date: date
    ) -> list[dict]:
        """Raw daily bars for a stock or option ticker (cached)."""
        cache_key = (ticker, start_date, end_date)
        if cache_key in self._aggs_cache:
            return self._aggs_cache[cache_key]

        url = (
            f"{self.BASE_URL}/v2/aggs/ticker/{ticker}"
            f"/range/1/day/{start_date}/{end_date}"
        )
        params = {"adjusted": "true", "sort": "asc", "limit": 50000}
        bars = await self._get_all_pages(url, params)
        self._aggs_cache[cache_key] = bars
        return bars

    async def get_daily_bars(
        self, ticker: str, start_date: date, end_date: date
    ) -> pd.DataFrame:
        """Daily OHLCV bars as a DataFrame indexed 0..n, one row per session."""
        bars = await self.get_aggregates(ticker, start_date, end_date)
        if not bars:
            return pd.DataFrame(columns=BAR_COLUMNS)

        records = []
        for bar in bars:
            records.append(
                {
                    "date": datetime.fromtimestamp(bar["t"] / 1000, tz=timezone.utc).date(),
                    "open": bar.get("o", 0.0),
                    "high": bar.get("h", 0.0),
                    "low": bar.get("l", 0.0),
                    "close": bar.get("c", 0.0),
                    "volume": bar.get("v", 0),
                    "vwap": bar.get("vw", 0.0),
                }
            )
        return pd.DataFrame(records).sort_values("date").reset_index(drop=True)

    async def get_previous_close(self, ticker: str) -> Optional[dict]:
        """Previous session bar for a ticker, or None (cached)."""
        cache_key = ticker.upper()
        if cache_key in self._price_cache:
            return self._price_cache[cache_key]

        url = f"{self.BASE_URL}/v2/aggs/ticker/{cache_key}/prev"
        data = await self._get_json(url, {"adjusted": "true"})
        results = data.get("results") or []
        bar = results[0] if results else None
        self._price_cache[cache_key] = bar
        return bar

    # ── Snapshots ────────────────────────────────────────────

    async def get_options_chain_snapshot(
        self,
        underlying: str,
        expiration: Optional[date] = None,
        max_results: Optional[int] = 250,
    ) -> list[dict]:
        """Chain snapshot: quotes, greeks, IV, OI and day stats per contract."""
        cache_key = (underlying.upper(), expiration, max_results)
        if cache_key in self._snapshot_cache:
            return self._snapshot_cache[cache_key]

        url = f"{self.BASE_URL}/v3/snapshot/options/{underlying.upper()}"
        params: dict = {"limit": 250}
        if expiration:
            params["expiration_date"] = expiration.isoformat()
        results = await self._get_all_pages(url, params, max_results)
        self._snapshot_cache[cache_key] = results
        return results

    async def get_contract_snapshots(
        self, tickers: list[str], batch_size: int = 250
    ) -> dict[str, dict]:
        """Per-contract snapshots, batched via `ticker.any_of`. Keyed by ticker."""
        out: dict[str, dict] = {}
        pending = [t for t in tickers if ("contract", t) not in self._snapshot_cache]
        for t in tickers:
            if ("contract", t) in self._snapshot_cache:
                out[t] = self._snapshot_cache[("contract", t)]

        url = f"{self.BASE_URL}/v3/snapshot"
        for i in range(0, len(pending), batch_size):
            batch = pending[i:i + batch_size]
            params = {"ticker.any_of": ",".join(batch), "limit": len(batch)}
            for item in await self._get_all_pages(url, params):
                ticker = item.get("ticker")
                if not ticker:
                    continue
                self._snapshot_cache[("contract", ticker)] = item
                out[ticker] = item
        return out

    # ── Trades / quotes ──────────────────────────────────────

    async def get_trades(
        self,
        option_ticker: str,
        start: datetime | date,
        end: datetime | date,
        max_results: Optional[int] = 5000,
    ) -> list[dict]:
        """Tick-level trades for one contract between `start` and `end`."""
        url = f"{self.BASE_URL}/v3/trades/{option_ticker}"
        params = {
            "timestamp.gte": _ts_param(start),
            "timestamp.lte": _ts_param(end),
            "order": "asc",
            "sort": "timestamp",
            "limit": 50000,
        }
        return await self._get_all_pages(url, params, max_results)

    async def get_quote_at(self, option_ticker: str, ts_ns: int) -> Optional[dict]:
        """The NBBO quote prevailing at `ts_ns` (latest quote at or before it)."""
        url = f"{self.BASE_URL}/v3/quotes/{option_ticker}"
        params = {
            "timestamp.lte": ts_ns,
            "order": "desc",
            "sort": "timestamp",
            "limit": 1,
        }
        data = await self._get_json(url, params)
        results = data.get("results") or []
        return results[0] if results else None

    # ── Reference / analyst ratings ──────────────────────────

    async def get_ticker_details(self, ticker: str) -> Optional[dict]:
        """Company reference data (name, description, market cap…) or None."""
        cache_key = ("details", ticker.upper())
        if cache_key in self._contracts_cache:
            return self._contracts_cache[cache_key]

        url = f"{self.BASE_URL}/v3/reference/tickers/{ticker.upper()}"
        data = await self._get_json(url)
        details = data.get("results") or None
        self._contracts_cache[cache_key] = details
        return details

    async def get_benzinga_ratings(
        self,
        day: date,
        lookback_days: int = 4,
        max_results: Optional[int] = 1000,
    ) -> list[dict]:
        """
        Benzinga analyst ratings published on `day`. When that day has none
        (weekends, early morning) walks back one day at a time, up to
        `lookback_days`, and returns the first non-empty day.
        """
        cache_key = (day, lookback_days, max_results)
        if cache_key in self._ratings_cache:
            return self._ratings_cache[cache_key]

        ratings: list[dict] = []
        for offset in range(lookback_days + 1):
            d = day - timedelta(days=offset)
            for path in RATINGS_PATHS:
                try:
                    ratings = await self._get_all_pages(
                        f"{self.BASE_URL}{path}",
                        {"date": d.isoformat(), "limit": 1000},
                        max_results,
                    )
                except (MissingAPIKeyError, PolygonAuthError):
                    raise
                except PolygonAPIError as e:
                    logger.warning("Ratings fetch failed on %s for %s: %s", path, d, e)
                    continue
                if ratings:
                    logger.info("Fetched %d analyst ratings for %s from %s", len(ratings), d, path)
                    self._ratings_cache[cache_key] = ratings
                    return ratings
            logger.debug("No analyst ratings for %s", d)

        self._ratings_cache[cache_key] = []
        return []


def _ts_param(value: datetime | date) -> str | int:
    """Polygon accepts YYYY-MM-DD dates or nanosecond timestamps."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1_000_000_000)
    return value.isoformat()


# Singleton – lifecycle managed via FastAPI lifespan
polygon_client = PolygonClient()
