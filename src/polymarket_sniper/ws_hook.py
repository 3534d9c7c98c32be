import asyncio
import json
import time
from typing import Callable, Iterable, List, Optional

import websockets

from polymarket_sniper.feed_events import BookTick, FeedStatus, TradeTick

Sink = Callable[[object], None]


class ClobWsHook:
    """Market odds stream for the active window's two outcome tokens.

    ``subscribe`` replaces the subscription wholesale (one connection per
    window). After a disconnect the hook only reconnects while
    ``should_reconnect()`` holds; otherwise the next window's subscription
    takes over.
    """

    def __init__(
        self,
        url: str,
        sink: Sink,
        reconnect_delay: float = 1.0,
        should_reconnect: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = time.time,
        connect=None,
    ):
        self.url = url
        self.sink = sink
        self.reconnect_delay = reconnect_delay
        self.should_reconnect = should_reconnect
        self.clock = clock
        self._connect = connect or websockets.connect
        self._asset_ids: List[str] = []
        self._last_msg_ts = 0.0
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, asset_ids: Iterable[str]):
        self._asset_ids = [str(a) for a in asset_ids if a]
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(list(self._asset_ids)))

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    @staticmethod
    def subscribe_message(asset_ids: List[str]) -> dict:
        return {"type": "market", "assets_ids": asset_ids}

    async def _run(self, asset_ids: List[str]):
        while True:
            try:
                async with self._connect(self.url, ping_interval=20, ping_timeout=20, close_timeout=10) as ws:
                    await ws.send(json.dumps(self.subscribe_message(asset_ids)))
                    self.sink(FeedStatus(feed="odds", status="connected", detail=f"{len(asset_ids)} assets"))
                    async for msg in ws:
                        self._on_message(msg)
                detail = "closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                detail = f"{type(e).__name__}: {e}"
            self.sink(FeedStatus(feed="odds", status="disconnected", detail=detail))
            await asyncio.sleep(self.reconnect_delay)
            if not self.should_reconnect():
                self.sink(FeedStatus(feed="odds", status="stopped", detail="window closing"))
                return

    def _on_message(self, raw):
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            return
        self._last_msg_ts = self.clock()
        for tick in self.parse(obj):
            self.sink(tick)

    def parse(self, obj) -> List[object]:
        out: List[object] = []
        now = self._last_msg_ts or self.clock()
        items = obj if isinstance(obj, list) else [obj]
        for it in items:
            if not isinstance(it, dict):
                continue
            et = str(it.get("event_type", "")).lower()
            if et == "price_change":
                for ch in _levels(it.get("price_changes")):
                    if isinstance(ch, dict):
                        self._book(out, str(ch.get("asset_id", "")), _f(ch.get("best_bid")), _f(ch.get("best_ask")), now)
                continue

            if et == "best_bid_ask":
                self._book(out, str(it.get("asset_id", "")), _f(it.get("best_bid")), _f(it.get("best_ask")), now)
                continue

            if et == "book":
                bids = _levels(it.get("bids")) or _levels(it.get("buys"))
                asks = _levels(it.get("asks")) or _levels(it.get("sells"))
                bid_vals = [_f(x.get("price")) for x in bids if isinstance(x, dict)]
                ask_vals = [_f(x.get("price")) for x in asks if isinstance(x, dict)]
                bid = max([b for b in bid_vals if b > 0] or [0.0])
                ask = min([a for a in ask_vals if a > 0] or [0.0])
                self._book(out, str(it.get("asset_id", "")), bid, ask, now)
                continue

            if et == "last_trade_price":
                aid = str(it.get("asset_id", ""))
                px = _f(it.get("price"))
                if aid and 0 < px <= 1:
                    out.append(TradeTick(asset_id=aid, price=px, ts=now))
        return out

    def _book(self, out: list, aid: str, bid: float, ask: float, now: float):
        if not aid or (bid <= 0 and ask <= 0):
            return
        out.append(BookTick(asset_id=aid, bid=bid if bid > 0 else None, ask=ask if ask > 0 else None, ts=now))


def _levels(v) -> list:
    return v if isinstance(v, list) else []


def _f(x) -> float:
    try:
        return float(x)
    except (TypeError, ValueError, OverflowError):
        return 0.0
