from pydantic import BaseModel, Field
from typing import List, Optional

UP = "UP"
DOWN = "DOWN"


class MarketWindow(BaseModel):
    market_id: str
    slug: str
    title: str = ""
    open_ts: float
    close_ts: float
    up_token: str
    down_token: str
    initial_up: Optional[float] = None
    initial_down: Optional[float] = None
    # Filled in after creation, possibly by a background retry.
    price_to_beat: Optional[float] = None

    def seconds_remaining(self, now: float) -> int:
        return max(0, int(self.close_ts - now))

    def token_for(self, direction: str) -> str:
        return self.up_token if direction == UP else self.down_token

    def side_for(self, asset_id: str) -> Optional[str]:
        if asset_id == self.up_token:
            return UP
        if asset_id == self.down_token:
            return DOWN
        return None


class Position(BaseModel):
    id: str
    market_id: str
    market_name: str = ""
    direction: str  # UP / DOWN
    token_id: str
    strategy: str
    status: str = "open"  # open / closed / expired
    stake_usd: float
    size: float
    entry_price: float
    opened_at: str = ""
    opened_ts: float = 0.0
    odds_at_entry: Optional[float] = None
    reference_at_entry: Optional[float] = None
    reference_open: Optional[float] = None
    secs_left_at_entry: Optional[int] = None
    # Divergence-arbitrage exits.
    target_price: Optional[float] = None
    stop_price: Optional[float] = None
    divergence_at_entry: Optional[float] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[str] = None
    pnl_usd: Optional[float] = None
    closed_at: Optional[str] = None


class TradeAttempt(BaseModel):
    attempt: int
    side: str  # BUY / SELL
    live_price: Optional[float] = None
    slippage: float = 0.0
    target_price: Optional[float] = None
    secs_left: Optional[int] = None
    outcome: str = "not_filled"  # filled / not_filled / error
    error: Optional[str] = None
    logs: List[str] = Field(default_factory=list)


class TradeHistoryRecord(BaseModel):
    timestamp: str
    market: str
    type: str  # ENTRY / STOP_LOSS_SELL / ARB_ENTRY / ARB_EXIT / PASSIVE_FILL
    strategy: str
    direction: str
    odds: Optional[float] = None
    price: Optional[float] = None
    size: Optional[float] = None
    reference_open: Optional[float] = None
    reference_at_trade: Optional[float] = None
    secs_left: Optional[int] = None
    attempts: int = 0
    success: bool
    error: Optional[str] = None
    reason: Optional[str] = None
    pnl_usd: Optional[float] = None


class SessionState(BaseModel):
    spent_usd: float = 0.0
    proceeds_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    settled_pnl_usd: float = 0.0
    positions: List[Position] = Field(default_factory=list)
    closed_positions: List[Position] = Field(default_factory=list)
    trades: List[TradeHistoryRecord] = Field(default_factory=list)


class Decision(BaseModel):
    approved: bool
    reason: str


class StateSnapshot(BaseModel):
    ts: str
    mode: str
    market: Optional[dict] = None
    secs_left: Optional[int] = None
    reference_source: str = ""
    reference_open: Optional[float] = None
    reference_price: Optional[float] = None
    momentum_pct: Optional[float] = None
    up_odds: Optional[float] = None
    down_odds: Optional[float] = None
    odds_age_s: Optional[float] = None
    order_book: dict = Field(default_factory=dict)
    implied_up: Optional[float] = None
    divergence: dict = Field(default_factory=dict)
    signal: str = ""
    leader: Optional[str] = None
    leader_odds: Optional[float] = None
    positions: List[dict] = Field(default_factory=list)
    trade_in_flight: bool = False
    exit_in_flight: bool = False
    trade_stats: dict = Field(default_factory=dict)
    logs: List[str] = Field(default_factory=list)
