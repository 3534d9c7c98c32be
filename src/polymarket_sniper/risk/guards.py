from typing import List, Optional

from polymarket_sniper.config import DivergenceArbConfig, RiskConfig
from polymarket_sniper.engine.context import WindowContext
from polymarket_sniper.models import DOWN, UP, Decision, Position

EPS = 1e-9


def approve(ctx: WindowContext, cfg: DivergenceArbConfig, reference: Optional[float], now: float) -> Decision:
    """Window-level gate for a divergence-arbitrage entry (side-specific checks live in the evaluator)."""
    if reference is None or ctx.price_to_beat is None:
        return Decision(approved=False, reason="reference_unknown")
    if ctx.odds.best_ask(UP) is None and ctx.odds.best_ask(DOWN) is None:
        return Decision(approved=False, reason="no_ask")
    if ctx.busy:
        return Decision(approved=False, reason="executing")
    if len(ctx.open_positions) >= cfg.max_concurrent_positions:
        return Decision(approved=False, reason="max_concurrent_positions")
    if ctx.trades_this_window >= cfg.max_trades_per_window:
        return Decision(approved=False, reason="max_trades_per_window")
    if ctx.last_trade_ts and (now - ctx.last_trade_ts) < cfg.cooldown_seconds:
        return Decision(approved=False, reason="cooldown")
    secs = ctx.secs_left(now)
    if secs < cfg.min_secs_left or secs > cfg.max_secs_left:
        return Decision(approved=False, reason="outside_time_range")
    return Decision(approved=True, reason="ok")


def reference_crossed(direction: str, reference: Optional[float], open_price: Optional[float]) -> bool:
    if reference is None or open_price is None:
        return False
    if direction == UP:
        return reference < open_price
    return reference > open_price


def stop_loss_trigger(
    pos: Position,
    held_prob: Optional[float],
    reference: Optional[float],
    open_price: Optional[float],
    cfg: RiskConfig,
) -> List[str]:
    """Every stop-loss condition currently true for ``pos`` (empty when none fire)."""
    reasons = []
    if held_prob is not None and (pos.entry_price - held_prob) >= cfg.stop_loss_cents - EPS:
        reasons.append("odds_drop")
    if cfg.reference_cross_enabled and reference_crossed(pos.direction, reference, open_price):
        reasons.append("reference_cross")
    return reasons


def arb_exit_reason(
    pos: Position,
    held_price: Optional[float],
    ask_price: Optional[float],
    implied: Optional[float],
    reference: Optional[float],
    open_price: Optional[float],
    secs_left: int,
    cfg: DivergenceArbConfig,
) -> Optional[str]:
    if held_price is None:
        return None
    if pos.target_price is not None and held_price >= pos.target_price - EPS:
        return "profit_target"
    if pos.stop_price is not None and held_price <= pos.stop_price + EPS:
        return "stop_price"
    if reference_crossed(pos.direction, reference, open_price):
        return "reference_revert"
    in_profit = held_price > pos.entry_price
    if secs_left < cfg.time_exit_secs_left and in_profit:
        return "time_exit"
    if in_profit and implied is not None and ask_price is not None and (implied - ask_price) < cfg.convergence_divergence:
        return "convergence"
    return None
