"""
Sweep Monitor
=============
Polls the last few minutes of option prints for every ticker that has an
active alert, keeps the large ones, and hands each (sweep, alert) match
to the registered notifiers.

A sweep matches an alert when the underlying is the alert's ticker, the
print location is one of the alert's locations, and the inferred side is
not neutral.
"""
import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from cachetools import TTLCache

from snoopflow.classifier import ClassifierThresholds
from snoopflow.config import settings
from snoopflow.data_layer import AlertStore
from snoopflow.market_data import sweep_from_trade
from snoopflow.models import (
    AlertCriteria,
    NotificationType,
    OptionsContract,
    OptionsSweep,
    SweepAlert,
    TradeSide,
)
from snoopflow.polygon_client import MissingAPIKeyError, PolygonAPIError, PolygonClient

logger = logging.getLogger("snoopflow.sweep_monitor")


def sweep_matches(sweep: OptionsSweep, criteria: AlertCriteria) -> bool:
    return (
        criteria.is_active
        and sweep.ticker.upper() == criteria.ticker.upper()
        and sweep.trade_location in criteria.trade_locations
        and sweep.inferred_side is not TradeSide.NEUTRAL
    )


# ── Notifiers ───────────────────────────────────────────────

class LoggingNotifier:
    async def notify(self, alert: SweepAlert) -> None:
        s = alert.sweep
        target = ""
        if alert.notification_type is NotificationType.EMAIL:
            target = f" → {alert.email or '(no address)'}"
        logger.info(
            "ALERT %s [%s%s]: %s %s %s %s x%d @ %.2f (%s, premium $%.0f)",
            alert.criteria_id, alert.notification_type.value, target,
            s.ticker, s.option_type.value.upper(), s.strike, s.expiration,
            s.volume, s.price, s.trade_location.value, s.premium,
        )


class RecentAlertsNotifier:
    """Keeps the latest matches in memory for browser delivery via the API."""

    def __init__(self, maxlen: int = 200):
        self._alerts: deque[SweepAlert] = deque(maxlen=maxlen)

    async def notify(self, alert: SweepAlert) -> None:
        self._alerts.append(alert)

    def recent(self, user_id: Optional[str] = None) -> list[SweepAlert]:
        """Newest first."""
        return [a for a in reversed(self._alerts) if user_id is None or a.user_id == user_id]


# ── Monitor ─────────────────────────────────────────────────

class SweepMonitor:
    def __init__(
        self,
        polygon: PolygonClient,
        alerts: AlertStore,
        notifiers: Optional[list] = None,
        thresholds: Optional[ClassifierThresholds] = None,
        *,
        lookback_minutes: Optional[int] = None,
        min_size: Optional[int] = None,
        interval: Optional[int] = None,
        contracts_per_ticker: int = 10,
        sleep=asyncio.sleep,
    ):
        self._poly = polygon
        self._alerts = alerts
        self.notifiers = notifiers if notifiers is not None else [LoggingNotifier()]
        self.thresholds = thresholds or ClassifierThresholds.from_settings(settings)
        self.lookback_minutes = lookback_minutes or settings.SWEEP_LOOKBACK_MINUTES
        self.min_size = min_size or settings.SWEEP_MIN_SIZE
        self.interval = interval or settings.SWEEP_MONITOR_INTERVAL
        self.contracts_per_ticker = contracts_per_ticker
        self._sleep = sleep

        # sweep ids already dispatched, so overlapping windows don't re-alert
        self._dispatched: TTLCache = TTLCache(
            maxsize=50_000, ttl=max(self.lookback_minutes * 60 * 2, self.interval * 2)
        )
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_run: Optional[dict] = None

    # ── fetch ────────────────────────────────────────────────

    async def _active_contracts(self, ticker: str) -> list[OptionsContract]:
        """Most-traded contracts of the session so far, from the chain snapshot."""
        chain = await self._poly.get_options_chain_snapshot(ticker)
        chain = sorted(
            chain, key=lambda r: (r.get("day") or {}).get("volume") or 0, reverse=True
        )
        contracts = []
        for r in chain[: self.contracts_per_ticker]:
            details = r.get("details") or {}
            if not details.get("ticker") or not details.get("expiration_date"):
                continue
            try:
                contracts.append(
                    OptionsContract.from_polygon({**details, "underlying_ticker": ticker.upper()})
                )
            except (KeyError, ValueError) as e:
                logger.debug("Skipping malformed snapshot %s: %s", details.get("ticker"), e)
        return contracts

    async def fetch_live_sweeps(
        self, tickers: Optional[Iterable[str]] = None, now: Optional[datetime] = None
    ) -> list[OptionsSweep]:
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(minutes=self.lookback_minutes)
        tickers = [t.upper() for t in (tickers if tickers is not None else self._alerts.watched_tickers())]

        sweeps: list[OptionsSweep] = []
        for ticker in tickers:
            try:
                for contract in await self._active_contracts(ticker):
                    for trade in await self._poly.get_trades(contract.ticker, since, now):
                        if int(trade.get("size") or 0) < self.min_size:
                            continue
                        ts_ns = trade.get("sip_timestamp") or trade.get("participant_timestamp")
                        if not ts_ns:
                            continue
                        quote = await self._poly.get_quote_at(contract.ticker, ts_ns)
                        sweep = sweep_from_trade(contract, trade, quote, self.thresholds)
                        if sweep:
                            sweeps.append(sweep)
            except MissingAPIKeyError:
                raise
            except PolygonAPIError as e:
                logger.error("Live sweeps failed for %s: %s", ticker, e)
                continue
        logger.info("Fetched %d live sweeps across %d tickers", len(sweeps), len(tickers))
        return sweeps

    # ── match + notify ───────────────────────────────────────

    async def check_alerts(self, sweeps: Iterable[OptionsSweep]) -> list[SweepAlert]:
        sweeps = list(sweeps)
        matched: list[SweepAlert] = []
        for criteria in self._alerts.active():
            for sweep in sweeps:
                if not sweep_matches(sweep, criteria):
                    continue
                key = (criteria.id, sweep.id)
                if key in self._dispatched:
                    continue
                self._dispatched[key] = True
                alert = SweepAlert(
                    criteria_id=criteria.id,
                    user_id=criteria.user_id,
                    sweep=sweep,
                    notification_type=criteria.notification_type,
                    email=criteria.email,
                )
                matched.append(alert)
                await self._dispatch(alert)
        return matched

    async def _dispatch(self, alert: SweepAlert):
        for notifier in self.notifiers:
            try:
                await notifier.notify(alert)
            except Exception:
                logger.exception("Notifier %s failed", type(notifier).__name__)

    # ── loop ─────────────────────────────────────────────────

    async def run_once(self) -> dict:
        sweeps = await self.fetch_live_sweeps()
        alerts = await self.check_alerts(sweeps)
        self.last_run = {
            "sweeps": len(sweeps),
            "alerts": len(alerts),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": "Sweep monitoring completed",
        }
        return self.last_run

    async def start(self):
        if self._task is None or self._task.done():
            self._running = True
            logger.info("Sweep monitor polling every %ss", self.interval)
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self):
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except PolygonAPIError as e:
                logger.error("Sweep monitor pass failed: %s", e)
            except Exception:
                logger.exception("Sweep monitor pass failed")
            await self._sleep(self.interval)

    def get_status(self) -> dict:
        return {
            "running": self._task is not None and not self._task.done(),
            "interval": self.interval,
            "lookback_minutes": self.lookback_minutes,
            "watched_tickers": self._alerts.watched_tickers(),
            "last_run": self.last_run,
        }
