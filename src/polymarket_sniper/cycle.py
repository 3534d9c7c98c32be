from __future__ import annotations

import asyncio
from typing import Optional

from polymarket_sniper.adapters.gamma import GammaAdapter
from polymarket_sniper.config import EngineConfig
from polymarket_sniper.engine.context import WindowContext
from polymarket_sniper.events import EventLog
from polymarket_sniper.loop import Engine
from polymarket_sniper.models import MarketWindow
from polymarket_sniper.ws_hook import ClobWsHook

SEEKING = "seeking"
ACTIVE = "active"
ROLLING = "rolling"


class MarketCycleController:
    """Seeking -> Active -> Rolling, one window at a time."""

    def __init__(self, engine: Engine, gamma: GammaAdapter, odds_hook: Optional[ClobWsHook], cfg: EngineConfig, log: EventLog):
        self.engine = engine
        self.gamma = gamma
        self.odds_hook = odds_hook
        self.cfg = cfg
        self.log = log
        self.clock = engine.clock
        self.sleep = engine.sleep
        self.state = SEEKING
        self.windows_done = 0
        self._run_task: Optional[asyncio.Task] = None
        engine.on_halt = self._on_halt

    def _on_halt(self):
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()

    async def seek(self) -> MarketWindow:
        self.state = SEEKING
        m = self.cfg.market
        while True:
            now = self.clock()
            window = await self.gamma.fetch_current_window(now)
            if window is None:
                why = self.gamma.last_error or "not found"
                self.log.log(f"No active window ({why}); retrying in {m.not_found_retry_seconds:g}s", "yellow")
                await self.sleep(m.not_found_retry_seconds)
                continue
            left = window.seconds_remaining(self.clock())
            if left <= m.too_late_seconds:
                wait = left + m.too_late_grace_seconds
                self.log.log(f"{window.slug} has only {left}s left; waiting {wait:g}s for the next window", "yellow")
                await self.sleep(wait)
                continue
            return window

    async def activate(self, window: MarketWindow) -> WindowContext:
        self.state = ACTIVE
        ctx = self.engine.install_window(window)
        m = self.cfg.market
        for attempt in range(1, m.price_to_beat_attempts + 1):
            px = await self.gamma.fetch_price_to_beat(window)
            if ctx is not self.engine.ctx:
                return ctx
            if px is not None:
                self.engine.set_price_to_beat(ctx, px)
                break
            self.log.log(f"Price to beat unavailable (attempt {attempt}/{m.price_to_beat_attempts})", "yellow")
            if attempt < m.price_to_beat_attempts:
                await self.sleep(m.price_to_beat_retry_seconds)
        if ctx.price_to_beat is None:
            self.log.log("Price to beat still missing; retrying in the background", "yellow")
        ctx.price_to_beat_attempted = True
        if self.odds_hook is not None:
            self.odds_hook.subscribe([window.up_token, window.down_token])
        return ctx

    async def run_cycle(self) -> dict:
        self.gamma.reset_call_count()
        window = await self.seek()
        ctx = await self.activate(window)
        wait = max(0.0, window.close_ts - self.clock()) + self.cfg.market.rollover_grace_seconds
        await self.sleep(wait)
        self.state = ROLLING
        record = self.engine.close_window(ctx, gamma_calls=self.gamma.call_count)
        self.windows_done += 1
        return record

    async def _loop(self, max_windows: Optional[int]):
        while not self.engine.halted:
            await self.run_cycle()
            if max_windows is not None and self.windows_done >= max_windows:
                return

    async def run(self, max_windows: Optional[int] = None) -> int:
        self._run_task = asyncio.get_running_loop().create_task(self._loop(max_windows))
        try:
            await self._run_task
        except asyncio.CancelledError:
            if not self.engine.halted:
                raise
            self.log.log("Cycle stopped by halt", "bold red")
        return self.windows_done
