from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from polymarket_sniper.models import DOWN, UP, Position, SessionState, TradeHistoryRecord

TRADE_HISTORY_LIMIT = 200
CLOSED_POSITION_LIMIT = 200


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_session() -> SessionState:
    return SessionState(positions=[], closed_positions=[], trades=[])


def open_position(
    state: SessionState,
    market_id: str,
    market_name: str,
    direction: str,
    token_id: str,
    entry_price: float,
    stake_usd: float,
    strategy: str,
    opened_ts: float = 0.0,
    size: Optional[float] = None,
    **extra,
) -> Position:
    if stake_usd <= 0 or entry_price <= 0:
        raise ValueError("invalid_open")
    qty = float(size) if size else float(stake_usd) / float(entry_price)
    pos = Position(
        id=uuid4().hex[:12],
        market_id=market_id,
        market_name=market_name,
        direction=direction,
        token_id=token_id,
        strategy=strategy,
        status="open",
        stake_usd=float(stake_usd),
        size=qty,
        entry_price=float(entry_price),
        opened_at=_now_iso(),
        opened_ts=opened_ts,
        **extra,
    )
    state.spent_usd += float(stake_usd)
    state.positions.append(pos)
    return pos


def _retire(state: SessionState, pos: Position) -> None:
    state.positions = [p for p in state.positions if p.id != pos.id]
    state.closed_positions.append(pos)
    if len(state.closed_positions) > CLOSED_POSITION_LIMIT:
        state.closed_positions = state.closed_positions[-CLOSED_POSITION_LIMIT:]


def close_position(state: SessionState, pos: Position, exit_price: float, reason: str) -> float:
    if exit_price <= 0:
        raise ValueError("invalid_close")
    proceeds = float(pos.size) * float(exit_price)
    pnl = proceeds - float(pos.stake_usd)
    state.proceeds_usd += proceeds
    state.realized_pnl_usd += pnl
    pos.status = "closed"
    pos.exit_price = float(exit_price)
    pos.exit_reason = reason
    pos.pnl_usd = pnl
    pos.closed_at = _now_iso()
    _retire(state, pos)
    return pnl


def settle_position(state: SessionState, pos: Position, outcome: Optional[str]) -> Optional[float]:
    """Mark a position held through close as expired.

    With a known outcome the payout is 1.0 per share for the winning side and
    zero otherwise; without one the position is retired unsettled.
    """
    pos.status = "expired"
    pos.closed_at = _now_iso()
    pnl = None
    if outcome in (UP, DOWN):
        payout = float(pos.size) if pos.direction == outcome else 0.0
        pnl = payout - float(pos.stake_usd)
        pos.exit_price = 1.0 if pos.direction == outcome else 0.0
        pos.exit_reason = "settled"
        pos.pnl_usd = pnl
        state.settled_pnl_usd += pnl
    else:
        pos.exit_reason = "expired_unsettled"
    _retire(state, pos)
    return pnl


def record_trade(state: SessionState, record: TradeHistoryRecord) -> None:
    state.trades.append(record)
    if len(state.trades) > TRADE_HISTORY_LIMIT:
        state.trades = state.trades[-TRADE_HISTORY_LIMIT:]


def trade_stats(state: SessionState) -> dict:
    ok = [t for t in state.trades if t.success]
    return {
        "trades": len(ok),
        "failed": len(state.trades) - len(ok),
        "open_positions": len(state.positions),
        "spent_usd": round(state.spent_usd, 4),
        "proceeds_usd": round(state.proceeds_usd, 4),
        "realized_pnl_usd": round(state.realized_pnl_usd, 4),
        "settled_pnl_usd": round(state.settled_pnl_usd, 4),
    }


def paper_resting_fill(odds: Optional[float], limit_price: float) -> bool:
    """Dry-run stand-in for a resting buy: it fills once the side trades at or below the limit."""
    return odds is not None and odds <= limit_price
