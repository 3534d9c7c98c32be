"""Reference price streams.

Each hook owns one reconnecting websocket task and forwards every valid price
to a sink (the engine's event queue) as a ``PriceTick``. Connection changes are
forwarded as ``FeedStatus``.
"""

import asyncio
import json
import time
from typing import Callable, Optional

import websockets

from polymarket_sniper.feed_events import FeedStatus, PriceTick

Sink = Callable[[object], None]


def _f(x) -> Optional[float]:
    try:
        v = float(x)
    except (TypeError, ValueError, OverflowError):
        return None
    return v if v > 0 else None


class ReferencePriceHook:
    source = ""

    def __init__(self, url: str, sink: Sink, reconnect_delay: float = 3.0, clock: Callable[[], float] = time.time, connect=None):
        self.url = url
        self.sink = sink
        self.reconnect_delay = reconnect_delay
        self.clock = clock
        self._connect = connect or websockets.connect
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _subscribe(self, ws):
        pass

    def parse(self, raw) -> Optional[float]:
        raise NotImplementedError

    async def _run(self):
        while self._running:
            try:
                async with self._connect(self.url, ping_interval=20, ping_timeout=20) as ws:
                    self.sink(FeedStatus(feed="reference", status="connected", detail=self.source))
                    await self._subscribe(ws)
                    async for msg in ws:
                        self._on_msg(msg)
                detail = "closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                detail = f"{type(e).__name__}: {e}"
            if not self._running:
                break
            self.sink(FeedStatus(feed="reference", status="reconnecting", detail=f"{self.source} {detail}; retry in {self.reconnect_delay:g}s"))
            await asyncio.sleep(self.reconnect_delay)

    def _on_msg(self, raw):
        px = self.parse(raw)
        if px is None:
            return
        self.sink(PriceTick(source=self.source, price=px, ts=self.clock()))


class RtdsPriceHook(ReferencePriceHook):
    """Chainlink BTC/USD over Polymarket's real-time data service."""

    source = "chainlink"

    def __init__(self, url: str, sink: Sink, topic: str = "crypto_prices_chainlink", symbol: str = "btc/usd", **kwargs):
        super().__init__(url, sink, **kwargs)
        self.topic = topic
        self.symbol = symbol.lower()

    def subscribe_message(self) -> dict:
        return {
            "action": "subscribe",
            "subscriptions": [
                {
                    "topic": self.topic,
                    "type": "*",
                    "filters": json.dumps({"symbol": self.symbol}, separators=(",", ":")),
                },
            ],
        }

    async def _subscribe(self, ws):
        await ws.send(json.dumps(self.subscribe_message()))

    def parse(self, raw) -> Optional[float]:
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            return None
        payload = obj.get("payload") if isinstance(obj, dict) else None
        if not isinstance(payload, dict):
            return None
        # Snapshot message may come as payload.data list without symbol; ignore.
        if isinstance(payload.get("data"), list):
            return None
        sym = str(payload.get("symbol", self.symbol)).lower()
        if sym != self.symbol:
            return None
        return _f(payload.get("value"))


class BinancePriceHook(ReferencePriceHook):
    """Binance bookTicker mid price."""

    source = "binance"

    def parse(self, raw) -> Optional[float]:
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(obj, dict):
            return None
        bid = _f(obj.get("b"))
        ask = _f(obj.get("a"))
        if bid is None or ask is None:
            return None
        return (bid + ask) / 2.0
