"""Entry decisions for the current window.

Single-position strategies are tried in order (early entry, checkpoint
ladder, last resort) and the first to fire wins. Divergence arbitrage is a
separate mode that may hold one position per side.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from polymarket_sniper.config import EngineConfig
from polymarket_sniper.engine.context import Checkpoint, WindowContext
from polymarket_sniper.events import EventLog
from polymarket_sniper.models import DOWN, UP
from polymarket_sniper.risk.guards import approve

EARLY_ENTRY = "early_entry"
CHECKPOINT = "checkpoint"
LAST_RESORT = "last_resort"
DIVERGENCE_ARB = "divergence_arb"
PASSIVE_RESTING = "passive_resting"

# exp() overflows past ~709
_MAX_EXPONENT = 700.0


@dataclass
class EntrySignal:
    strategy: str
    direction: str
    odds: Optional[float]
    cutoff_s: int
    reason: str
    checkpoint: Optional[Checkpoint] = None
    implied: Optional[float] = None
    ask: Optional[float] = None
    divergence: Optional[float] = None


def implied_probability(
    reference: Optional[float],
    open_price: Optional[float],
    secs_left: float,
    k_base: float = 2.0,
    horizon: float = 300.0,
    min_seconds: float = 10.0,
) -> Optional[float]:
    """Model probability that the window resolves UP.

    A logistic curve over the percentage move from the open, steeper as the
    window nears its close: ``k = k_base * sqrt(horizon / max(secs_left, min_seconds))``.
    """
    if not reference or not open_price:
        return None
    pct = (reference - open_price) / open_price * 100.0
    k = k_base * math.sqrt(horizon / max(float(secs_left), min_seconds))
    x = max(-_MAX_EXPONENT, min(_MAX_EXPONENT, -k * pct))
    return 1.0 / (1.0 + math.exp(x))


def reference_move(reference: Optional[float], open_price: Optional[float]) -> Optional[float]:
    if reference is None or open_price is None:
        return None
    return reference - open_price


class SignalEvaluator:
    def __init__(self, cfg: EngineConfig, log: EventLog):
        self.cfg = cfg
        self.log = log

    def _cutoff(self, at: int, floor: Optional[int] = None) -> int:
        ex = self.cfg.execution
        return max(at - ex.cutoff_buffer_seconds, ex.cutoff_floor_seconds if floor is None else floor)

    def evaluate(self, ctx: WindowContext, reference: Optional[float], now: float) -> Optional[EntrySignal]:
        if ctx.has_entry or ctx.busy or ctx.position is not None:
            return None
        secs = ctx.secs_left(now)
        strategies = self.cfg.strategies

        if strategies.checkpoints.enabled:
            self._expire_checkpoints(ctx, secs)

        if not ctx.odds.known:
            return None

        if strategies.early_entry.enabled and not ctx.early_entry_fired:
            sig = self._early_entry(ctx, secs)
            if sig:
                return sig

        if strategies.checkpoints.enabled:
            sig = self._checkpoint(ctx, secs, reference)
            if sig:
                return sig

        if strategies.last_resort.enabled and not ctx.last_resort_fired:
            sig = self._last_resort(ctx, secs, reference)
            if sig:
                return sig
        return None

    def _early_entry(self, ctx: WindowContext, secs: int) -> Optional[EntrySignal]:
        ee = self.cfg.strategies.early_entry
        if secs > ee.max_secs_left or secs < ee.min_secs_left:
            return None
        leader = ctx.odds.leader
        if not ctx.history.sustained_above(leader, ee.min_confidence, ee.sustain_samples):
            return None
        ctx.early_entry_fired = True
        odds = ctx.odds.prob(leader)
        reason = f"{leader} >= {ee.min_confidence:.0%} for {ee.sustain_samples} samples at T-{secs}"
        self.log.log(f">>> EARLY ENTRY: {reason}", "bold cyan")
        self.log.emit("signal", strategy=EARLY_ENTRY, direction=leader, odds=odds, secs_left=secs)
        return EntrySignal(EARLY_ENTRY, leader, odds, self._cutoff(secs), reason)

    def _expire_checkpoints(self, ctx: WindowContext, secs: int) -> None:
        """Consume checkpoints the clock has already passed without a chance to evaluate them."""
        ladder = ctx.ladder
        floor = self.cfg.strategies.checkpoints.min_secs_left
        while not ladder.exhausted:
            cp = ladder.next
            later = ladder.following
            stale = (later is not None and secs < later.at) or secs < floor
            if not stale:
                return
            ladder.consume()
            self.log.log(f"T-{cp.at} checkpoint passed at T-{secs} without evaluation", "dim")
            self.log.emit("checkpoint", at=cp.at, fired=False, reason="missed", secs_left=secs)

    def _checkpoint(self, ctx: WindowContext, secs: int, reference: Optional[float]) -> Optional[EntrySignal]:
        cc = self.cfg.strategies.checkpoints
        cp = ctx.ladder.due(secs, cc.min_secs_left)
        if cp is None:
            return None
        ctx.ladder.consume()
        leader = ctx.odds.leader
        odds = ctx.odds.leader_prob
        if odds < cp.min_confidence:
            self.log.log(f"T-{cp.at}: SKIP {leader} {odds:.1%} < {cp.min_confidence:.0%}", "yellow")
            self.log.emit("checkpoint", at=cp.at, fired=False, reason="below_confidence", leader=leader, odds=odds, secs_left=secs)
            return None

        if cc.require_reference_move:
            move = reference_move(reference, ctx.price_to_beat)
            if move is None:
                self.log.log(f"T-{cp.at}: reference move unknown, confirmation skipped", "dim")
            else:
                signed = move if leader == UP else -move
                if signed < cc.min_reference_move_usd:
                    self.log.log(
                        f"T-{cp.at}: SKIP {leader} {odds:.1%}, reference moved ${move:+.2f} (need ${cc.min_reference_move_usd:.0f} {leader})",
                        "yellow",
                    )
                    self.log.emit("checkpoint", at=cp.at, fired=False, reason="reference_unconfirmed", leader=leader, odds=odds, move=move, secs_left=secs)
                    return None

        reason = f"T-{cp.at} {leader} {odds:.1%} >= {cp.min_confidence:.0%}"
        self.log.log(f">>> CHECKPOINT: {reason}", "bold cyan")
        self.log.emit("checkpoint", at=cp.at, fired=True, leader=leader, odds=odds, secs_left=secs)
        return EntrySignal(CHECKPOINT, leader, odds, self._cutoff(cp.at), reason, checkpoint=cp)

    def _last_resort(self, ctx: WindowContext, secs: int, reference: Optional[float]) -> Optional[EntrySignal]:
        lr = self.cfg.strategies.last_resort
        if self.cfg.strategies.checkpoints.enabled and not ctx.ladder.exhausted:
            return None
        if secs > lr.max_secs_left or secs < lr.min_secs_left:
            return None

        direction = None
        reason = ""
        move = reference_move(reference, ctx.price_to_beat)
        if move is not None and abs(move) >= lr.min_reference_move_usd:
            direction = UP if move > 0 else DOWN
            reason = f"reference moved ${move:+.2f} from open"
        else:
            best = None
            for side in (UP, DOWN):
                rise = ctx.history.rise(side, lr.surge_samples)
                if rise is not None and rise >= lr.surge_delta - 1e-9 and (best is None or rise > best):
                    best = rise
                    direction = side
            if direction:
                reason = f"{direction} surged {best:+.2f} over last {lr.surge_samples} samples"
        if direction is None:
            return None

        ctx.last_resort_fired = True
        odds = ctx.odds.prob(direction)
        self.log.log(f">>> LAST RESORT at T-{secs}: {direction} ({reason})", "bold magenta")
        self.log.emit("signal", strategy=LAST_RESORT, direction=direction, odds=odds, secs_left=secs, reason=reason)
        cutoff = self.cfg.execution.last_resort_cutoff_floor_seconds
        return EntrySignal(LAST_RESORT, direction, odds, cutoff, reason)

    def evaluate_arb(self, ctx: WindowContext, reference: Optional[float], now: float) -> Optional[EntrySignal]:
        arb = self.cfg.strategies.divergence_arb
        decision = approve(ctx, arb, reference, now)
        if not decision.approved:
            return None
        secs = ctx.secs_left(now)
        implied_up = implied_probability(reference, ctx.price_to_beat, secs, arb.k_base, arb.horizon_seconds, arb.min_model_seconds)
        if implied_up is None:
            return None

        for side in (UP, DOWN):
            ask = ctx.odds.best_ask(side)
            if ask is None:
                continue
            implied = implied_up if side == UP else 1.0 - implied_up
            div = implied - ask
            if div > arb.divergence_threshold and ctx.open_position_for(side) is None:
                reason = f"divergence {div:+.1%} implied {implied:.1%} vs ask {ask:.1%} at T-{secs}"
                self.log.log(f">>> ARB SIGNAL: {side} | {reason}", "bold cyan")
                self.log.emit("signal", strategy=DIVERGENCE_ARB, direction=side, implied=implied, ask=ask, divergence=div, secs_left=secs)
                return EntrySignal(
                    DIVERGENCE_ARB,
                    side,
                    ctx.odds.prob(side),
                    arb.min_secs_left,
                    reason,
                    implied=implied,
                    ask=ask,
                    divergence=div,
                )
        return None


def describe_signal(ctx: Optional[WindowContext], cfg: EngineConfig, now: float, reference: Optional[float] = None) -> str:
    """One-line human summary of what the engine is doing for the status line and snapshot."""
    if ctx is None:
        return "SEEKING WINDOW"
    secs = ctx.secs_left(now)
    mode = cfg.strategies.mode

    if mode == "arb":
        if ctx.entry_in_flight:
            return "PLACING TRADE..."
        if ctx.exit_in_flight:
            return "EXITING..."
        if secs <= 0:
            return "MARKET CLOSING"
        arb = cfg.strategies.divergence_arb
        implied_up = implied_probability(reference, ctx.price_to_beat, secs, arb.k_base, arb.horizon_seconds, arb.min_model_seconds)
        if implied_up is None:
            return "WAITING FOR DATA"
        best = None
        for side in (UP, DOWN):
            ask = ctx.odds.best_ask(side)
            if ask is None:
                continue
            div = (implied_up if side == UP else 1.0 - implied_up) - ask
            if best is None or div > best[1]:
                best = (side, div)
        if best and best[1] > arb.divergence_threshold and ctx.open_position_for(best[0]) is None:
            return f">>> BUY {best[0]} (div {best[1]:+.1%}) <<<"
        return "SCANNING"

    if ctx.exit_in_flight:
        return "STOP LOSS SELLING..."
    if ctx.stop_loss_fired:
        return "STOP LOSS TRIGGERED"
    if ctx.entry_in_flight:
        return "PLACING TRADE..."
    pos = ctx.position
    if pos is not None:
        return f"BET {pos.direction} @ {pos.entry_price:.2f}"
    if ctx.has_entry:
        return "DONE (position closed)"

    if mode == "passive":
        if secs <= 0:
            return "MARKET CLOSING"
        if ctx.resting_orders:
            return f"RESTING {len(ctx.resting_orders)} order(s) @ {cfg.strategies.passive_resting.limit_price:.2f}"
        return "WAIT"

    if secs <= 0:
        return "MARKET CLOSING"
    cp = ctx.ladder.next if cfg.strategies.checkpoints.enabled else None
    if cp is None:
        if cfg.strategies.last_resort.enabled and not ctx.last_resort_fired:
            return f"LAST RESORT WATCH (T-{cfg.strategies.last_resort.max_secs_left})"
        return "DONE (all checkpoints passed)"
    last = ctx.ladder.consumed[-1] if ctx.ladder.consumed else None
    if last is not None and ctx.odds.known and secs <= last.at and ctx.odds.leader_prob < last.min_confidence:
        return f"SKIP ({ctx.odds.leader} {ctx.odds.leader_prob:.1%} < {last.min_confidence:.0%}) -> T-{cp.at}"
    return f"WAIT -> T-{cp.at} (need {cp.min_confidence:.0%}+)"
