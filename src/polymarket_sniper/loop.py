"""The engine: one queue, one owner of window state.

Feed hooks push ``PriceTick`` / ``BookTick`` / ``TradeTick`` / ``FeedStatus``
events into ``Engine.queue``; a single consumer applies each one atomically to
the current ``WindowContext`` and runs the evaluator. A ticker drives the
periodic work (history sampling, stop-loss, exits, passive polling,
snapshots). Orders run as separate tasks guarded by the in-flight flags on the
context, and their results are only applied if the context is still current.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

from rich import print

from polymarket_sniper.adapters.gamma import GammaAdapter
from polymarket_sniper.config import EngineConfig
from polymarket_sniper.engine.context import Checkpoint, ReferenceState, WindowContext
from polymarket_sniper.engine.signals import (
    DIVERGENCE_ARB,
    PASSIVE_RESTING,
    EntrySignal,
    SignalEvaluator,
    describe_signal,
    implied_probability,
)
from polymarket_sniper.events import EventLog
from polymarket_sniper.execution.engine import BUY, SELL, OrderExecutionEngine, RetryPlan
from polymarket_sniper.execution.live import LiveExecutor
from polymarket_sniper.execution.passive import PassiveRestingManager
from polymarket_sniper.feed_events import BookTick, FeedStatus, PriceTick, TradeTick
from polymarket_sniper.models import DOWN, UP, MarketWindow, Position, StateSnapshot, TradeHistoryRecord
from polymarket_sniper.risk.guards import arb_exit_reason, stop_loss_trigger
from polymarket_sniper.rtds_hook import BinancePriceHook, RtdsPriceHook
from polymarket_sniper.sim.paper import (
    close_position,
    init_session,
    open_position,
    record_trade,
    settle_position,
    trade_stats,
)
from polymarket_sniper.utils.storage import save_state
from polymarket_sniper.ws_hook import ClobWsHook


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Engine:
    def __init__(
        self,
        cfg: EngineConfig,
        log: EventLog,
        executor: Optional[LiveExecutor] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.log = log
        self.clock = clock
        self.sleep = sleep
        self.executor = executor or LiveExecutor(cfg)
        self.mode = cfg.strategies.mode
        self.queue: asyncio.Queue = asyncio.Queue()
        self.reference = ReferenceState(source=cfg.feeds.reference_source)
        self.ctx: Optional[WindowContext] = None
        self.session = init_session()
        self.evaluator = SignalEvaluator(cfg, log)
        self.orders = OrderExecutionEngine(self.executor, log, sleep=sleep)
        self.passive = PassiveRestingManager(self.executor, cfg, log)
        self.gamma: Optional[GammaAdapter] = None
        self.halted = False
        self.on_halt: Optional[Callable[[], None]] = None
        self._tasks: Set[asyncio.Task] = set()
        self._last_snapshot = 0.0
        self._checkpoints = [Checkpoint(at=c.at, min_confidence=c.min_confidence) for c in cfg.strategies.checkpoints.ladder]

    # ── feed side ─────────────────────────────────────────────────────
    def publish(self, event) -> None:
        self.queue.put_nowait(event)

    def handle_event(self, ev) -> None:
        if isinstance(ev, PriceTick):
            if not self.reference.update(ev.price, ev.ts):
                return
        elif isinstance(ev, (BookTick, TradeTick)):
            if not self._apply_odds(ev):
                return
        elif isinstance(ev, FeedStatus):
            style = "green" if ev.status == "connected" else "yellow"
            self.log.log(f"{ev.feed} feed {ev.status}{': ' + ev.detail if ev.detail else ''}", style)
            self.log.emit("feed_status", feed=ev.feed, status=ev.status, detail=ev.detail)
            return
        else:
            return
        self.evaluate(self.clock())

    def _apply_odds(self, ev) -> bool:
        ctx = self.ctx
        if ctx is None:
            return False
        side = ctx.window.side_for(ev.asset_id)
        if side is None:
            return False
        if isinstance(ev, TradeTick):
            ctx.odds.apply_trade(side, ev.price, ev.ts)
            return True
        if ev.bid is not None and ev.ask is not None:
            ctx.odds.apply_book(side, ev.bid, ev.ask, ev.ts)
            return True
        q = ctx.odds.quotes[side]
        if ev.bid is not None:
            q.bid = ev.bid
        if ev.ask is not None:
            q.ask = ev.ask
        return True

    async def consume(self) -> None:
        while True:
            ev = await self.queue.get()
            try:
                self.handle_event(ev)
            except Exception as e:
                self._loop_error("event", e)

    async def ticker(self) -> None:
        while True:
            await self.sleep(self.cfg.app.tick_seconds)
            try:
                self.on_tick(self.clock())
            except Exception as e:
                self._loop_error("tick", e)

    def _loop_error(self, where: str, exc: Exception) -> None:
        detail = f"{type(exc).__name__}: {exc}"
        try:
            self.log.log(f"{where} error: {detail}", "red")
            self.log.emit("loop_error", where=where, error=detail)
        except OSError as e:
            print(f"[red]{where} error: {detail} (event log unavailable: {e})[/red]")

    # ── window lifecycle ──────────────────────────────────────────────
    def install_window(self, window: MarketWindow) -> WindowContext:
        self.ctx = WindowContext.create(window, self._checkpoints, self.cfg.app.history_capacity)
        now = self.clock()
        self.log.log(f"Active window: {window.title} ({window.slug}) T-{window.seconds_remaining(now)}", "bold")
        self.log.emit(
            "window_active",
            market_id=window.market_id,
            slug=window.slug,
            title=window.title,
            open_ts=window.open_ts,
            close_ts=window.close_ts,
            up_token=window.up_token,
            down_token=window.down_token,
            secs_left=window.seconds_remaining(now),
        )
        return self.ctx

    def set_price_to_beat(self, ctx: WindowContext, price: float, background: bool = False) -> bool:
        if ctx is not self.ctx:
            return False
        ctx.window.price_to_beat = price
        self.log.log(f"Price to beat{' (background)' if background else ''}: ${price:,.2f}", "cyan")
        self.log.emit("price_to_beat", market_id=ctx.window_id, price=price, background=background)
        return True

    def close_window(self, ctx: WindowContext, gamma_calls: Optional[int] = None) -> dict:
        w = ctx.window
        ref = self.reference.price
        outcome = None
        if ref is not None and w.price_to_beat is not None:
            outcome = UP if ref >= w.price_to_beat else DOWN
        held = [p.model_dump() for p in ctx.open_positions]
        settled = 0.0
        for pos in ctx.open_positions:
            pnl = settle_position(self.session, pos, outcome)
            settled += pnl or 0.0
        record = self.log.emit(
            "window_rollover",
            market_id=w.market_id,
            slug=w.slug,
            final_up=ctx.odds.up,
            final_down=ctx.odds.down,
            reference_open=w.price_to_beat,
            reference_close=ref,
            outcome=outcome,
            had_position=bool(held),
            positions=held,
            settled_pnl_usd=settled,
            gamma_calls=gamma_calls,
        )
        self.log.log(
            f"Window {w.slug} closed: outcome {outcome or '?'} | position {'yes' if held else 'no'}"
            + (f" | settled ${settled:+.2f}" if held else ""),
            "bold",
        )
        if held:
            self._save_session()
        if ctx is self.ctx:
            self.ctx = None
        return record

    # ── periodic work ─────────────────────────────────────────────────
    def on_tick(self, now: float) -> None:
        ctx = self.ctx
        if ctx is None:
            return
        ctx.history.maybe_sample(ctx.odds, self.reference.price, now, self.cfg.app.history_sample_seconds)
        self._maybe_retry_price_to_beat(ctx, now)
        self.evaluate(now)
        if self.mode == "arb":
            self.check_arb_exits(now)
        else:
            self.check_stop_loss(now)
        if self.mode == "passive":
            self.passive_tick(now)
        if now - self._last_snapshot >= self.cfg.app.snapshot_seconds:
            self._last_snapshot = now
            self.publish_snapshot(now)

    def evaluate(self, now: float) -> None:
        ctx = self.ctx
        if ctx is None or self.halted:
            return
        if self.mode == "sniper":
            sig = self.evaluator.evaluate(ctx, self.reference.price, now)
        elif self.mode == "arb":
            sig = self.evaluator.evaluate_arb(ctx, self.reference.price, now)
        else:
            return
        if sig is None:
            return
        if ctx.entry_in_flight:
            self.log.log(f"{sig.strategy} {sig.direction} dropped: trade already in flight", "dim")
            return
        ctx.entry_in_flight = True
        if self.mode == "arb":
            ctx.last_trade_ts = now
        self._spawn(self._run_entry(ctx, sig))

    def _maybe_retry_price_to_beat(self, ctx: WindowContext, now: float) -> None:
        if ctx.price_to_beat is not None or not ctx.price_to_beat_attempted or ctx.price_to_beat_retrying:
            return
        if self.gamma is None or now < ctx.price_to_beat_next_try:
            return
        ctx.price_to_beat_retrying = True
        ctx.price_to_beat_next_try = now + self.cfg.market.background_retry_seconds
        self._spawn(self._background_price_to_beat(ctx))

    async def _background_price_to_beat(self, ctx: WindowContext) -> None:
        try:
            px = await self.gamma.fetch_price_to_beat(ctx.window)
            if px is not None:
                self.set_price_to_beat(ctx, px, background=True)
        finally:
            ctx.price_to_beat_retrying = False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.log(f"task error: {type(exc).__name__}: {exc}", "red")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── entries ───────────────────────────────────────────────────────
    def _entry_plan(self, sig: EntrySignal) -> RetryPlan:
        ex = self.cfg.execution
        if sig.strategy == DIVERGENCE_ARB:
            steps = [self.cfg.strategies.divergence_arb.slippage]
        else:
            steps = list(ex.entry_slippage_steps)
        return RetryPlan(
            side=BUY,
            slippage_steps=steps,
            delay_s=ex.entry_retry_delay_seconds,
            cutoff_s=sig.cutoff_s,
            min_price=ex.min_price,
            max_price=ex.max_price,
            tick=ex.tick_size,
        )

    async def _run_entry(self, ctx: WindowContext, sig: EntrySignal) -> None:
        try:
            arb = sig.strategy == DIVERGENCE_ARB
            stake = self.cfg.strategies.divergence_arb.stake_usd if arb else self.cfg.execution.stake_usd
            token = ctx.window.token_for(sig.direction)
            direction = sig.direction

            def live_price() -> Optional[float]:
                if arb:
                    return ctx.odds.best_ask(direction) or ctx.odds.prob(direction)
                return ctx.odds.prob(direction)

            secs_at_entry = ctx.secs_left(self.clock())
            self.log.log(f"Placing {sig.strategy} BUY {direction} ${stake:.2f} (cutoff T-{sig.cutoff_s})", "bold")
            outcome = await self.orders.buy(
                token, stake, self._entry_plan(sig), live_price, lambda: ctx.secs_left(self.clock()), label=sig.strategy
            )

            if ctx is not self.ctx:
                self.log.log(f"{sig.strategy} result for {ctx.window.slug} arrived after rollover; discarded (filled={outcome.filled})", "yellow")
                return

            record = TradeHistoryRecord(
                timestamp=_now_iso(),
                market=ctx.window.slug,
                type="ARB_ENTRY" if arb else "ENTRY",
                strategy=sig.strategy,
                direction=direction,
                odds=sig.odds,
                price=outcome.price,
                size=outcome.size,
                reference_open=ctx.price_to_beat,
                reference_at_trade=self.reference.price,
                secs_left=secs_at_entry,
                attempts=len(outcome.attempts),
                success=outcome.filled,
                error=outcome.error if not outcome.filled else None,
                reason=sig.reason,
            )
            if outcome.filled:
                extra = {}
                if arb:
                    arb_cfg = self.cfg.strategies.divergence_arb
                    extra = {
                        "target_price": min(outcome.price + (sig.divergence or 0.0) * arb_cfg.profit_capture, self.cfg.execution.max_price),
                        "stop_price": max(outcome.price - arb_cfg.stop_loss_cents, self.cfg.execution.min_price),
                        "divergence_at_entry": sig.divergence,
                    }
                pos = open_position(
                    self.session,
                    market_id=ctx.window_id,
                    market_name=ctx.window.slug,
                    direction=direction,
                    token_id=token,
                    entry_price=outcome.price,
                    stake_usd=stake,
                    strategy=sig.strategy,
                    opened_ts=self.clock(),
                    size=outcome.size,
                    odds_at_entry=sig.odds,
                    reference_at_entry=self.reference.price,
                    reference_open=ctx.price_to_beat,
                    secs_left_at_entry=secs_at_entry,
                    **extra,
                )
                ctx.positions.append(pos)
                ctx.has_entry = True
                ctx.trades_this_window += 1
                ctx.stop_loss_fired = False
                record.size = pos.size
                msg = f">>> BET {direction} {pos.size:.2f} @ {pos.entry_price:.2f} ({sig.strategy})"
                if arb:
                    msg += f" | target {pos.target_price:.2f} | SL {pos.stop_price:.2f}"
                elif self.cfg.risk.stop_loss_enabled:
                    msg += f" | stop at {pos.entry_price - self.cfg.risk.stop_loss_cents:.2f}"
                self.log.log(msg, "bold green")
            else:
                self.log.log(f"{sig.strategy} {direction} not filled ({outcome.reason}: {outcome.error or 'no fill'})", "red")
            self._record(record)
        finally:
            ctx.entry_in_flight = False

    # ── stop-loss (single-position modes) ─────────────────────────────
    def check_stop_loss(self, now: float) -> None:
        ctx = self.ctx
        risk = self.cfg.risk
        if ctx is None or not risk.stop_loss_enabled:
            return
        if ctx.busy or ctx.stop_loss_fired:
            return
        pos = ctx.position
        if pos is None or ctx.secs_left(now) < risk.exit_cutoff_seconds:
            return
        reasons = stop_loss_trigger(pos, ctx.odds.prob(pos.direction), self.reference.price, ctx.price_to_beat, risk)
        if not reasons:
            return
        ctx.stop_loss_fired = True
        ctx.exit_in_flight = True
        self._spawn(self._run_stop_loss(ctx, pos, reasons))

    async def _run_stop_loss(self, ctx: WindowContext, pos: Position, reasons: list) -> None:
        risk = self.cfg.risk
        sold = False
        try:
            held = ctx.odds.prob(pos.direction)
            for reason in reasons:
                if reason == "odds_drop":
                    self.log.log(
                        f">>> STOP LOSS TRIGGERED: {pos.direction} dropped from {pos.entry_price:.2f} to {held:.2f} "
                        f"({(pos.entry_price - held) * 100:.0f}c drop, threshold {risk.stop_loss_cents * 100:.0f}c)",
                        "bold red",
                    )
                else:
                    self.log.log(
                        f">>> STOP LOSS TRIGGERED: reference ${self.reference.price:,.2f} crossed open ${ctx.price_to_beat:,.2f} against {pos.direction}",
                        "bold red",
                    )
            plan = RetryPlan(
                side=SELL,
                slippage_steps=list(risk.stop_loss_slippage_steps),
                delay_s=risk.stop_loss_retry_delay_seconds,
                cutoff_s=risk.exit_cutoff_seconds,
                min_price=self.cfg.execution.min_price,
                max_price=self.cfg.execution.max_price,
                tick=self.cfg.execution.tick_size,
            )
            outcome = await self.orders.sell(
                pos.token_id,
                pos.size,
                plan,
                lambda: ctx.odds.prob(pos.direction),
                lambda: ctx.secs_left(self.clock()),
                label="stop-loss",
            )
            if ctx is not self.ctx:
                self.log.log(f"stop-loss result for {ctx.window.slug} arrived after rollover; discarded (filled={outcome.filled})", "yellow")
                return

            trigger = "+".join(reasons)
            secs = ctx.secs_left(self.clock())
            record = TradeHistoryRecord(
                timestamp=_now_iso(),
                market=ctx.window.slug,
                type="STOP_LOSS_SELL",
                strategy=pos.strategy,
                direction=pos.direction,
                odds=held,
                price=outcome.price,
                size=pos.size,
                reference_open=ctx.price_to_beat,
                reference_at_trade=self.reference.price,
                secs_left=secs,
                attempts=len(outcome.attempts),
                success=outcome.filled,
                error=outcome.error if not outcome.filled else None,
                reason=trigger,
            )
            if outcome.filled:
                sold = True
                pnl = close_position(self.session, pos, outcome.price, "stop_loss")
                record.pnl_usd = pnl
                self.log.log(f">>> STOP LOSS SOLD: {pos.size:.2f} @ {outcome.price:.2f} (P&L ${pnl:+.2f})", "bold red")
                self._record(record)
                self.log.emit(
                    "loss_report",
                    market=ctx.window.slug,
                    strategy=pos.strategy,
                    entry_time=pos.opened_at,
                    direction=pos.direction,
                    entry_price=pos.entry_price,
                    odds_at_entry=pos.odds_at_entry,
                    reference_at_entry=pos.reference_at_entry,
                    reference_open=pos.reference_open,
                    secs_left_at_entry=pos.secs_left_at_entry,
                    trigger=trigger,
                    sell_price=outcome.price,
                    loss_usd=pnl,
                    reference_now=self.reference.price,
                    secs_left=secs,
                )
                if pnl < 0 and risk.halt_after_loss:
                    self.halt(f"realized loss ${pnl:.2f} with halt_after_loss")
            else:
                self._record(record)
                self.log.log(">>> STOP LOSS ALL ATTEMPTS FAILED - will retry on next tick", "bold red")
        finally:
            if not sold:
                ctx.stop_loss_fired = False
            ctx.exit_in_flight = False

    # ── arbitrage exits ───────────────────────────────────────────────
    def check_arb_exits(self, now: float) -> None:
        ctx = self.ctx
        if ctx is None or ctx.exit_in_flight or not ctx.open_positions:
            return
        arb = self.cfg.strategies.divergence_arb
        secs = ctx.secs_left(now)
        if secs < self.cfg.risk.exit_cutoff_seconds:
            return
        implied_up = implied_probability(self.reference.price, ctx.price_to_beat, secs, arb.k_base, arb.horizon_seconds, arb.min_model_seconds)
        for pos in reversed(ctx.open_positions):
            d = pos.direction
            held = ctx.odds.best_bid(d) if ctx.odds.best_bid(d) is not None else ctx.odds.prob(d)
            ask = ctx.odds.best_ask(d) if ctx.odds.best_ask(d) is not None else ctx.odds.prob(d)
            implied = None if implied_up is None else (implied_up if d == UP else 1.0 - implied_up)
            reason = arb_exit_reason(pos, held, ask, implied, self.reference.price, ctx.price_to_beat, secs, arb)
            if reason:
                ctx.exit_in_flight = True
                self._spawn(self._run_arb_exit(ctx, pos, reason, held))
                return

    async def _run_arb_exit(self, ctx: WindowContext, pos: Position, reason: str, held: float) -> None:
        try:
            d = pos.direction
            self.log.log(f">>> EXIT {d}: {reason} @ {held:.2f} (entry {pos.entry_price:.2f})", "bold")
            plan = RetryPlan(
                side=SELL,
                slippage_steps=list(self.cfg.strategies.divergence_arb.exit_slippage_steps),
                delay_s=self.cfg.risk.stop_loss_retry_delay_seconds,
                cutoff_s=self.cfg.risk.exit_cutoff_seconds,
                min_price=self.cfg.execution.min_price,
                max_price=self.cfg.execution.max_price,
                tick=self.cfg.execution.tick_size,
            )

            def live_price() -> Optional[float]:
                bid = ctx.odds.best_bid(d)
                return bid if bid is not None else ctx.odds.prob(d)

            outcome = await self.orders.sell(pos.token_id, pos.size, plan, live_price, lambda: ctx.secs_left(self.clock()), label="arb-exit")
            if ctx is not self.ctx:
                self.log.log(f"arb exit result for {ctx.window.slug} arrived after rollover; discarded (filled={outcome.filled})", "yellow")
                return
            record = TradeHistoryRecord(
                timestamp=_now_iso(),
                market=ctx.window.slug,
                type="ARB_EXIT",
                strategy=pos.strategy,
                direction=d,
                odds=held,
                price=outcome.price,
                size=pos.size,
                reference_open=ctx.price_to_beat,
                reference_at_trade=self.reference.price,
                secs_left=ctx.secs_left(self.clock()),
                attempts=len(outcome.attempts),
                success=outcome.filled,
                error=outcome.error if not outcome.filled else None,
                reason=reason,
            )
            if outcome.filled:
                pnl = close_position(self.session, pos, outcome.price, reason)
                record.pnl_usd = pnl
                self.log.log(f">>> EXIT FILLED: {d} | P&L ${pnl:+.2f} | session ${self.session.realized_pnl_usd:+.2f}", "bold green" if pnl >= 0 else "bold red")
                if pnl < 0 and self.cfg.risk.halt_after_loss:
                    self.halt(f"realized loss ${pnl:.2f} with halt_after_loss")
            else:
                self.log.log(f"Exit failed: {outcome.error} - will retry", "red")
            self._record(record)
        finally:
            ctx.exit_in_flight = False

    # ── passive resting ───────────────────────────────────────────────
    def passive_tick(self, now: float) -> None:
        ctx = self.ctx
        if ctx is None or self.halted:
            return
        pr = self.cfg.strategies.passive_resting
        secs = ctx.secs_left(now)
        if not ctx.resting_placed:
            if secs > pr.cancel_secs_left and not ctx.busy:
                ctx.resting_placed = True
                ctx.entry_in_flight = True
                self._spawn(self._passive_place(ctx))
            return
        if not ctx.resting_orders or ctx.entry_in_flight:
            return
        if secs <= pr.cancel_secs_left:
            if not ctx.resting_cancelled:
                ctx.resting_cancelled = True
                self.log.log(f"T-{secs}: cancelling {len(ctx.resting_orders)} unfilled resting order(s)", "yellow")
                self._spawn(self.passive.cancel_remaining(ctx))
            return
        if ctx.position is None and not ctx.passive_poll_in_flight and now - ctx.last_passive_poll >= pr.poll_seconds:
            ctx.last_passive_poll = now
            ctx.passive_poll_in_flight = True
            self._spawn(self._passive_poll(ctx))

    async def _passive_place(self, ctx: WindowContext) -> None:
        try:
            await self.passive.place(ctx)
        finally:
            ctx.entry_in_flight = False

    async def _passive_poll(self, ctx: WindowContext) -> None:
        try:
            fill = await self.passive.poll(ctx)
            if fill is None:
                return
            if ctx is not self.ctx:
                self.log.log(f"resting fill for {ctx.window.slug} arrived after rollover; discarded", "yellow")
                return
            now = self.clock()
            secs = ctx.secs_left(now)
            stake = fill.price * fill.size
            pos = open_position(
                self.session,
                market_id=ctx.window_id,
                market_name=ctx.window.slug,
                direction=fill.direction,
                token_id=ctx.window.token_for(fill.direction),
                entry_price=fill.price,
                stake_usd=stake,
                strategy=PASSIVE_RESTING,
                opened_ts=now,
                size=fill.size,
                odds_at_entry=ctx.odds.prob(fill.direction),
                reference_at_entry=self.reference.price,
                reference_open=ctx.price_to_beat,
                secs_left_at_entry=secs,
            )
            ctx.positions.append(pos)
            ctx.has_entry = True
            self.log.log(f">>> RESTING FILL: {fill.direction} {fill.size:.2f} @ {fill.price:.2f} (order {fill.order_id})", "bold green")
            self._record(
                TradeHistoryRecord(
                    timestamp=_now_iso(),
                    market=ctx.window.slug,
                    type="PASSIVE_FILL",
                    strategy=PASSIVE_RESTING,
                    direction=fill.direction,
                    odds=pos.odds_at_entry,
                    price=fill.price,
                    size=fill.size,
                    reference_open=ctx.price_to_beat,
                    reference_at_trade=self.reference.price,
                    secs_left=secs,
                    attempts=1,
                    success=True,
                )
            )
            await self.passive.cancel_other(ctx, fill.direction)
        finally:
            ctx.passive_poll_in_flight = False

    # ── bookkeeping ───────────────────────────────────────────────────
    def _record(self, record: TradeHistoryRecord) -> None:
        record_trade(self.session, record)
        self.log.emit("trade", trade=record.model_dump())
        self._save_session()

    def _save_session(self) -> None:
        save_state(self.cfg.storage.session_path, self.session)

    def halt(self, reason: str) -> None:
        if self.halted:
            return
        self.halted = True
        self.log.log(f"HALT: {reason}", "bold red")
        self.log.emit("state", halted=True, reason=reason)
        if self.on_halt:
            self.on_halt()

    def build_snapshot(self, now: float) -> StateSnapshot:
        ctx = self.ctx
        ref = self.reference.price
        snap = StateSnapshot(
            ts=_now_iso(),
            mode=self.mode,
            reference_source=self.reference.source,
            reference_price=ref,
            signal=describe_signal(ctx, self.cfg, now, ref),
            trade_stats=trade_stats(self.session),
            logs=self.log.recent(),
        )
        if ctx is None:
            return snap
        w = ctx.window
        snap.market = {"market_id": w.market_id, "slug": w.slug, "title": w.title, "close_ts": w.close_ts}
        snap.secs_left = ctx.secs_left(now)
        snap.reference_open = w.price_to_beat
        if ref is not None and w.price_to_beat:
            snap.momentum_pct = (ref - w.price_to_beat) / w.price_to_beat * 100.0
        snap.up_odds = ctx.odds.up
        snap.down_odds = ctx.odds.down
        if ctx.odds.updated_ts:
            snap.odds_age_s = max(0.0, now - ctx.odds.updated_ts)
        snap.leader = ctx.odds.leader
        snap.leader_odds = ctx.odds.leader_prob
        snap.order_book = {d: {"bid": ctx.odds.best_bid(d), "ask": ctx.odds.best_ask(d)} for d in (UP, DOWN)}
        if self.mode == "arb":
            arb = self.cfg.strategies.divergence_arb
            implied_up = implied_probability(ref, w.price_to_beat, snap.secs_left, arb.k_base, arb.horizon_seconds, arb.min_model_seconds)
            snap.implied_up = implied_up
            if implied_up is not None:
                for d in (UP, DOWN):
                    ask = ctx.odds.best_ask(d)
                    if ask is not None:
                        snap.divergence[d] = (implied_up if d == UP else 1.0 - implied_up) - ask
        snap.positions = [p.model_dump() for p in ctx.open_positions]
        snap.trade_in_flight = ctx.entry_in_flight
        snap.exit_in_flight = ctx.exit_in_flight
        return snap

    def publish_snapshot(self, now: float) -> StateSnapshot:
        snap = self.build_snapshot(now)
        save_state(self.cfg.storage.snapshot_path, snap)
        self.log.emit("state", persist=False, snapshot=snap.model_dump())
        if self.cfg.app.console_status and self.log.console:
            up = f"{snap.up_odds:.2f}" if snap.up_odds is not None else "-"
            down = f"{snap.down_odds:.2f}" if snap.down_odds is not None else "-"
            ref = f"${snap.reference_price:,.2f}" if snap.reference_price is not None else "-"
            opn = f"${snap.reference_open:,.2f}" if snap.reference_open is not None else "-"
            print(f"[dim]T-{snap.secs_left}[/dim] UP {up} / DOWN {down} | ref {ref} open {opn} | [bold]{snap.signal}[/bold]")
        return snap


def build_reference_hook(cfg: EngineConfig, sink, clock=time.time):
    feeds = cfg.feeds
    if feeds.reference_source == "binance":
        return BinancePriceHook(feeds.binance_url, sink, reconnect_delay=feeds.binance_reconnect_seconds, clock=clock)
    return RtdsPriceHook(
        feeds.rtds_url,
        sink,
        topic=feeds.rtds_topic,
        symbol=feeds.rtds_symbol,
        reconnect_delay=feeds.reference_reconnect_seconds,
        clock=clock,
    )


def build_odds_hook(cfg: EngineConfig, engine: Engine) -> ClobWsHook:
    feeds = cfg.feeds

    def should_reconnect() -> bool:
        ctx = engine.ctx
        return ctx is not None and ctx.secs_left(engine.clock()) > feeds.odds_reconnect_min_secs_left

    return ClobWsHook(
        feeds.clob_ws_url,
        engine.publish,
        reconnect_delay=feeds.odds_reconnect_seconds,
        should_reconnect=should_reconnect,
        clock=engine.clock,
    )


async def run_forever(cfg: EngineConfig, log: EventLog, max_windows: Optional[int] = None) -> Engine:
    from polymarket_sniper.cycle import MarketCycleController

    engine = Engine(cfg, log)
    gamma = GammaAdapter(cfg.market)
    engine.gamma = gamma
    reference = build_reference_hook(cfg, engine.publish)
    odds = build_odds_hook(cfg, engine)
    cycle = MarketCycleController(engine, gamma, odds, cfg, log)

    log.log(
        f"Starting in {engine.mode} mode | reference {cfg.feeds.reference_source} | "
        f"{'DRY RUN' if engine.executor.dry_run else 'LIVE'} | stake ${cfg.execution.stake_usd:.2f}",
        "bold",
    )
    reference.start()
    consumer = asyncio.get_running_loop().create_task(engine.consume())
    ticker = asyncio.get_running_loop().create_task(engine.ticker())
    try:
        await cycle.run(max_windows=max_windows)
    finally:
        for t in (consumer, ticker):
            t.cancel()
        await asyncio.gather(consumer, ticker, return_exceptions=True)
        await odds.stop()
        await reference.stop()
        await engine.drain()
        engine._save_session()
        log.log(f"Stopped | {trade_stats(engine.session)}", "bold")
    return engine
