"""
Tests for the live options feed pipeline.

Raw Polygon WebSocket frames are pushed through `handle_raw` – the same
path the connection loop uses – and the ring buffer, quote cache and
subscriber queues are checked.
"""
import asyncio
import json

import pytest

from snoopflow import live_feed
from snoopflow.live_feed import LiveFeedManager, activity_from_trade_event
from snoopflow.classifier import DEFAULT_THRESHOLDS
from snoopflow.models import OptionType, TradeLocation

SYM = "O:AAPL240216C00150000"


def _trade(size=200, price=1.5, t=1707926400000, q=1, sym=SYM) -> dict:
    return {"ev": "T", "sym": sym, "p": price, "s": size, "t": t, "q": q}


def _frame(*msgs) -> str:
    return json.dumps(list(msgs))


@pytest.fixture
def lfm():
    """A fresh LiveFeedManager with a small buffer and no API key."""
    return LiveFeedManager(url="wss://test.invalid/options", buffer_size=3, api_key="")


class TestTradeEvent:
    def test_builds_activity(self):
        a = activity_from_trade_event(_trade(), None, DEFAULT_THRESHOLDS)
        assert a.symbol == "AAPL"
        assert a.type is OptionType.CALL
        assert a.strike == 150.0
        assert a.volume == 200
        assert a.premium == pytest.approx(30_000)
        assert a.unusual and a.block_trade
        assert a.trade_location is TradeLocation.MIDPOINT
        assert a.contract_ticker == SYM

    def test_quote_places_print(self):
        a = activity_from_trade_event(_trade(price=1.5), (1.4, 1.5), DEFAULT_THRESHOLDS)
        assert a.trade_location is TradeLocation.AT_ASK
        assert (a.bid, a.ask) == (1.4, 1.5)

    def test_bad_symbol(self):
        assert activity_from_trade_event(_trade(sym="AAPL"), None, DEFAULT_THRESHOLDS) is None

    def test_zero_price(self):
        assert activity_from_trade_event(_trade(price=0), None, DEFAULT_THRESHOLDS) is None


class TestHandleRaw:
    @pytest.mark.asyncio
    async def test_unusual_trade_buffered(self, lfm):
        await lfm.handle_raw(_frame(_trade()))
        assert len(lfm.recent) == 1
        assert lfm.get_status()["trades_seen"] == 1

    @pytest.mark.asyncio
    async def test_small_trade_not_buffered(self, lfm):
        await lfm.handle_raw(_frame(_trade(size=2, price=0.5)))
        assert len(lfm.recent) == 0
        assert lfm.get_status()["trades_seen"] == 1

    @pytest.mark.asyncio
    async def test_quote_then_trade(self, lfm):
        await lfm.handle_raw(_frame({"ev": "Q", "sym": SYM, "bp": 1.0, "ap": 1.1}))
        await lfm.handle_raw(_frame(_trade(price=1.0)))
        assert lfm.recent[-1].trade_location is TradeLocation.AT_BID

    @pytest.mark.asyncio
    async def test_single_object_frame(self, lfm):
        await lfm.handle_raw(json.dumps(_trade()))
        assert len(lfm.recent) == 1

    @pytest.mark.asyncio
    async def test_non_json_ignored(self, lfm):
        await lfm.handle_raw("not json")
        assert len(lfm.recent) == 0

    @pytest.mark.asyncio
    async def test_ring_buffer_keeps_newest(self, lfm):
        for i in range(5):
            await lfm.handle_raw(_frame(_trade(t=1707926400000 + i)))
        assert len(lfm.recent) == 3
        newest_first = lfm.get_recent()
        assert [a.id for a in newest_first] == [f"{SYM}-{1707926400000 + i}-1" for i in (4, 3, 2)]
        assert len(lfm.get_recent(limit=2)) == 2
        assert lfm.get_recent(symbol="TSLA") == []


class TestStatusMessages:
    @pytest.mark.asyncio
    async def test_auth_success(self, lfm):
        lfm._auth_event = asyncio.Event()
        await lfm.handle_raw(_frame({"ev": "status", "status": "auth_success", "message": "authenticated"}))
        assert lfm.authenticated
        assert lfm._auth_event.is_set()

    @pytest.mark.asyncio
    async def test_plan_failure_is_permanent(self, lfm):
        lfm._auth_event = asyncio.Event()
        await lfm.handle_raw(_frame({
            "ev": "status", "status": "auth_failed",
            "message": "Your plan doesn't include websocket access. Visit https://polygon.io/pricing to upgrade.",
        }))
        assert not lfm.authenticated
        assert lfm._auth_event.is_set()
        assert lfm.get_status()["plan_ok"] is False
        lfm._api_key = "key"
        await lfm.start()
        assert lfm._task is None

    @pytest.mark.asyncio
    async def test_bad_key_is_not_permanent(self, lfm):
        await lfm.handle_raw(_frame({"ev": "status", "status": "auth_failed", "message": "authentication failed"}))
        assert lfm.get_status()["plan_ok"] is True

    @pytest.mark.asyncio
    async def test_start_without_key_is_noop(self, lfm):
        await lfm.start()
        assert lfm._task is None
        assert lfm.get_status()["enabled"] is False


class TestSubscribers:
    @pytest.mark.asyncio
    async def test_subscribe_returns_buffer(self, lfm):
        await lfm.handle_raw(_frame(_trade()))
        snapshot = lfm.subscribe(asyncio.Queue())
        assert len(snapshot) == 1
        assert snapshot[0]["symbol"] == "AAPL"

    @pytest.mark.asyncio
    async def test_fan_out_to_every_queue(self, lfm):
        q1, q2 = asyncio.Queue(maxsize=10), asyncio.Queue(maxsize=10)
        lfm.subscribe(q1)
        lfm.subscribe(q2)
        await lfm.handle_raw(_frame(_trade()))
        for q in (q1, q2):
            payload = json.loads(q.get_nowait())
            assert payload["type"] == "activity"
            assert payload["activity"]["contract_ticker"] == SYM

    @pytest.mark.asyncio
    async def test_slow_client_drops_oldest(self, lfm):
        q = asyncio.Queue(maxsize=2)
        lfm.subscribe(q)
        for i in range(3):
            await lfm.handle_raw(_frame(_trade(t=1707926400000 + i)))
        ids = [json.loads(q.get_nowait())["activity"]["id"] for _ in range(2)]
        assert ids == [f"{SYM}-1707926400001-1", f"{SYM}-1707926400002-1"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, lfm):
        q = asyncio.Queue()
        lfm.subscribe(q)
        lfm.unsubscribe(q)
        await lfm.handle_raw(_frame(_trade()))
        assert q.empty()
        assert lfm.get_status()["subscribers"] == 0


class FakeSocket:
    """Answers `recv` from canned frames; iterating it ends immediately."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []
        self.iterated = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        await asyncio.sleep(3600)

    def __aiter__(self):
        self.iterated = True
        return self

    async def __anext__(self):
        raise StopAsyncIteration

    async def close(self):
        pass


class TestConnectionLoop:
    def _run(self, monkeypatch, status, connections=2):
        lfm = LiveFeedManager(url="wss://test.invalid/options", api_key="test-key-123456")
        lfm._reconnect_delay = 0
        sockets = []

        def fake_connect(url, **kw):
            if len(sockets) == connections:
                lfm._running = False
                raise OSError("done")
            ws = FakeSocket([_frame({"ev": "status", "status": status, "message": status})])
            sockets.append(ws)
            return ws

        monkeypatch.setattr(live_feed.websockets, "connect", fake_connect)
        lfm._running = True
        return lfm, sockets

    @pytest.mark.asyncio
    async def test_failed_auth_reconnects_without_subscribing(self, monkeypatch):
        lfm, sockets = self._run(monkeypatch, "auth_failed")
        await lfm._connection_loop()
        assert len(sockets) == 2
        for ws in sockets:
            assert [m["action"] for m in ws.sent] == ["auth"]
            assert not ws.iterated
        assert not lfm.authenticated

    @pytest.mark.asyncio
    async def test_auth_success_subscribes_and_reads(self, monkeypatch):
        lfm, sockets = self._run(monkeypatch, "auth_success", connections=1)
        await lfm._connection_loop()
        ws = sockets[0]
        assert [m["action"] for m in ws.sent] == ["auth", "subscribe"]
        assert ws.sent[1]["params"] == ",".join(lfm.channels)
        assert ws.iterated
