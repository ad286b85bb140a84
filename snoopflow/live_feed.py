"""
Live Options Flow Feed
======================
One upstream WebSocket to Polygon's options cluster:
  wss://socket.polygon.io/options  (realtime)
  wss://delayed.polygon.io/options (15-min delayed)

Subscribes to trade events (`T.O:*` by default, optionally quote events
`Q.O:*` so prints can be placed against the spread), classifies every
print, keeps the unusual ones in a bounded ring buffer and fans them
out to downstream client queues.

Usage from FastAPI:
  live_feed_manager = LiveFeedManager()
  await live_feed_manager.start()          # lifespan startup
  await live_feed_manager.stop()           # lifespan shutdown
  recent = live_feed_manager.subscribe(queue)
  live_feed_manager.unsubscribe(queue)
"""

import asyncio
import json
import logging
from collections import deque
from typing import Optional

import websockets
import websockets.exceptions
from cachetools import TTLCache

from snoopflow.classifier import ClassifierThresholds
from snoopflow.config import settings
from snoopflow.market_data import build_activity, from_ms
from snoopflow.models import OptionsActivity, OptionsContract
from snoopflow.polygon_client import parse_option_ticker

logger = logging.getLogger("snoopflow.live_feed")

OPTIONS_WS_DELAYED = "wss://delayed.polygon.io/options"
OPTIONS_WS_REALTIME = "wss://socket.polygon.io/options"

DEFAULT_CHANNELS = ("T.O:*",)

# Backoff when Polygon says "max_connections" (seconds)
MAX_CONN_BACKOFF = 30
MAX_RECONNECT_DELAY = 60

SUBSCRIBER_QUEUE_SIZE = 500


def activity_from_trade_event(
    msg: dict,
    quote: Optional[tuple[float, float]],
    thresholds: ClassifierThresholds,
) -> Optional[OptionsActivity]:
    """
    Polygon options `T` event → activity.
    {"ev":"T","sym":"O:AAPL240216C00150000","p":1.54,"s":200,"t":1707926400000,"q":9}
    """
    sym = msg.get("sym", "")
    try:
        parsed = parse_option_ticker(sym)
    except ValueError:
        return None
    price = float(msg.get("p") or 0.0)
    if price <= 0:
        return None

    contract = OptionsContract(
        ticker=sym,
        underlying=parsed["underlying"],
        type=parsed["type"],
        strike=parsed["strike"],
        expiration=parsed["expiration"],
    )
    snapshot = {"last_quote": {"bid": quote[0], "ask": quote[1]}} if quote else None
    return build_activity(
        activity_id=f"{sym}-{msg.get('t', 0)}-{msg.get('q', 0)}",
        contract=contract,
        volume=int(msg.get("s") or 0),
        price=price,
        timestamp=from_ms(msg.get("t", 0)),
        snapshot=snapshot,
        thresholds=thresholds,
    )


class LiveFeedManager:
    """
    Owns the upstream options WebSocket, the ring buffer of recent
    unusual activity and the downstream subscriber queues.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        channels: tuple[str, ...] = DEFAULT_CHANNELS,
        buffer_size: Optional[int] = None,
        thresholds: Optional[ClassifierThresholds] = None,
        api_key: Optional[str] = None,
    ):
        self.url = url or (
            OPTIONS_WS_DELAYED if settings.LIVE_FEED_DELAYED else OPTIONS_WS_REALTIME
        )
        self.channels = channels
        self.thresholds = thresholds or ClassifierThresholds.from_settings(settings)
        self._api_key = settings.POLYGON_API_KEY if api_key is None else api_key

        self.recent: deque[OptionsActivity] = deque(
            maxlen=buffer_size or settings.LIVE_BUFFER_SIZE
        )
        self._subscribers: set[asyncio.Queue] = set()
        # latest (bid, ask) per contract, fed by Q events
        self._quotes: TTLCache = TTLCache(maxsize=20_000, ttl=60)

        self.ws = None
        self.authenticated = False
        self._auth_failed_permanent = False
        self._auth_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._reconnect_delay = 1
        self._trades_seen = 0

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self):
        if self._auth_failed_permanent:
            logger.warning("Skipping live feed – plan doesn't include the options websocket")
            return
        if not self._api_key:
            logger.warning("Live feed not started – POLYGON_API_KEY is not set")
            return
        self._running = True
        if self._task is None or self._task.done():
            logger.info("Starting options feed on %s (%s)", self.url, ",".join(self.channels))
            self._task = asyncio.create_task(self._connection_loop())

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.ws:
            await self.ws.close()
        self.ws = None
        self.authenticated = False
        logger.info("Live feed stopped")

    # ── Downstream subscribers ───────────────────────────────

    def subscribe(self, queue: asyncio.Queue) -> list[dict]:
        """Register a client queue; returns the buffer contents, newest last."""
        self._subscribers.add(queue)
        logger.info("Live subscriber added – now %d", len(self._subscribers))
        return [a.to_dict() for a in self.recent]

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)
        logger.info("Live subscriber removed – now %d", len(self._subscribers))

    def get_recent(self, symbol: Optional[str] = None, limit: Optional[int] = None) -> list[OptionsActivity]:
        """Buffered unusual activity, newest first."""
        items = [a for a in reversed(self.recent) if symbol is None or a.symbol == symbol.upper()]
        return items[:limit] if limit else items

    def _fan_out(self, activity: OptionsActivity):
        payload = json.dumps({"type": "activity", "activity": activity.to_dict()})
        dead_queues = []
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                # Drop oldest if client is too slow
                try:
                    q.get_nowait()
                    q.put_nowait(payload)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    dead_queues.append(q)
        for q in dead_queues:
            self._subscribers.discard(q)

    # ── Upstream connection loop ─────────────────────────────

    async def _connection_loop(self):
        while self._running and not self._auth_failed_permanent:
            try:
                logger.info("Connecting to %s", self.url)
                async with websockets.connect(self.url, ping_interval=20, ping_timeout=10) as ws:
                    self.ws = ws
                    self._auth_event = asyncio.Event()

                    await self._authenticate(ws)
                    await self._await_auth(ws)

                    if self._auth_failed_permanent:
                        logger.error("Plan doesn't support the options websocket – stopping")
                        break

                    if not self.authenticated:
                        logger.warning("Not authenticated – reconnecting")
                    else:
                        self._reconnect_delay = 1
                        await ws.send(json.dumps({"action": "subscribe", "params": ",".join(self.channels)}))

                        async for raw_msg in ws:
                            await self.handle_raw(raw_msg)

            except (websockets.exceptions.ConnectionClosed,
                    ConnectionRefusedError, OSError) as e:
                logger.warning("Disconnected: %s", e)
                if "1008" in str(e) or "policy" in str(e).lower():
                    self._reconnect_delay = max(self._reconnect_delay, MAX_CONN_BACKOFF)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Live feed error")

            self.ws = None
            self.authenticated = False

            if self._running and not self._auth_failed_permanent:
                logger.info("Reconnecting in %ss…", self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, MAX_RECONNECT_DELAY)

    async def _authenticate(self, ws):
        masked = self._api_key[:4] + "…" + self._api_key[-4:] if len(self._api_key) > 8 else "***"
        logger.info("Sending auth (key: %s)", masked)
        await ws.send(json.dumps({"action": "auth", "params": self._api_key}))

    async def _await_auth(self, ws, timeout: float = 5.0):
        """Read frames until Polygon answers the auth request (or `timeout`)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self._auth_event.is_set():
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning("Auth response timeout")
                return
            await self.handle_raw(raw)

    async def handle_raw(self, raw_msg: str):
        try:
            messages = json.loads(raw_msg)
        except json.JSONDecodeError:
            logger.debug("Non-JSON: %s", raw_msg[:200])
            return
        if not isinstance(messages, list):
            messages = [messages]

        for msg in messages:
            ev = msg.get("ev")
            if ev == "status":
                self._handle_status(msg)
            elif ev == "T":
                self._handle_trade(msg)
            elif ev == "Q":
                sym = msg.get("sym")
                if sym:
                    self._quotes[sym] = (float(msg.get("bp") or 0.0), float(msg.get("ap") or 0.0))
            else:
                logger.debug("Unknown event: %s", json.dumps(msg)[:200])

    def _handle_status(self, msg: dict):
        status = msg.get("status", "")
        message = msg.get("message", "")
        if status == "auth_success":
            self.authenticated = True
            logger.info("Authenticated")
        elif status == "auth_failed":
            if "plan" in message.lower() or "upgrade" in message.lower():
                self._auth_failed_permanent = True
                self._running = False
            logger.error("Auth failed: %s", message)
        elif status == "max_connections":
            logger.warning("Max connections – backing off %ss: %s", MAX_CONN_BACKOFF, message)
            self._reconnect_delay = MAX_CONN_BACKOFF
        else:
            logger.info("status: %s – %s", status, message)
            return
        if self._auth_event is not None:
            self._auth_event.set()

    def _handle_trade(self, msg: dict):
        self._trades_seen += 1
        activity = activity_from_trade_event(msg, self._quotes.get(msg.get("sym")), self.thresholds)
        if activity is None or not activity.unusual:
            return
        self.recent.append(activity)
        self._fan_out(activity)

    # ── Status ───────────────────────────────────────────────

    def get_status(self) -> dict:
        return {
            "enabled": self._running,
            "url": self.url,
            "channels": list(self.channels),
            "connected": self.ws is not None and self.authenticated,
            "plan_ok": not self._auth_failed_permanent,
            "subscribers": len(self._subscribers),
            "trades_seen": self._trades_seen,
            "buffered": len(self.recent),
        }


# Singleton instance
live_feed_manager = LiveFeedManager()
