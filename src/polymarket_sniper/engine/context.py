"""Per-window state owned by the engine.

A fresh ``WindowContext`` is built for every market window and replaces the
previous one wholesale, so nothing from an old window leaks into the next.
The reference price is the only state shared across windows (``ReferenceState``).
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from polymarket_sniper.models import DOWN, UP, MarketWindow, Position


@dataclass
class Quote:
    bid: Optional[float] = None
    ask: Optional[float] = None


@dataclass
class OddsState:
    """Complementary outcome probabilities for the current window.

    Only the UP probability is stored; DOWN is always ``1 - up``.
    """

    up: Optional[float] = None
    updated_ts: float = 0.0
    quotes: Dict[str, Quote] = field(default_factory=lambda: {UP: Quote(), DOWN: Quote()})

    @property
    def down(self) -> Optional[float]:
        if self.up is None:
            return None
        return 1.0 - self.up

    @property
    def known(self) -> bool:
        return self.up is not None

    def prob(self, direction: str) -> Optional[float]:
        return self.up if direction == UP else self.down

    @property
    def leader(self) -> Optional[str]:
        if self.up is None:
            return None
        return UP if self.up >= self.down else DOWN

    @property
    def leader_prob(self) -> Optional[float]:
        if self.up is None:
            return None
        return max(self.up, self.down)

    def set_side(self, direction: str, value: float, ts: float) -> None:
        value = max(0.0, min(1.0, float(value)))
        self.up = value if direction == UP else 1.0 - value
        self.updated_ts = ts

    def apply_book(self, direction: str, bid: float, ask: float, ts: float) -> None:
        q = self.quotes[direction]
        q.bid = bid
        q.ask = ask
        self.set_side(direction, (bid + ask) / 2.0, ts)

    def apply_trade(self, direction: str, price: float, ts: float) -> None:
        self.set_side(direction, price, ts)

    def best_bid(self, direction: str) -> Optional[float]:
        return self.quotes[direction].bid

    def best_ask(self, direction: str) -> Optional[float]:
        return self.quotes[direction].ask


@dataclass
class OddsSample:
    ts: float
    up: float
    down: float
    reference: Optional[float] = None

    def prob(self, direction: str) -> float:
        return self.up if direction == UP else self.down


class OddsHistory:
    def __init__(self, capacity: int = 30):
        self.capacity = max(1, int(capacity))
        self._samples: deque = deque(maxlen=self.capacity)
        self._last_sample_ts = 0.0

    def __len__(self) -> int:
        return len(self._samples)

    def append(self, sample: OddsSample) -> None:
        self._samples.append(sample)
        self._last_sample_ts = sample.ts

    def maybe_sample(self, odds: OddsState, reference: Optional[float], now: float, interval: float) -> bool:
        if not odds.known:
            return False
        if self._samples and (now - self._last_sample_ts) < interval:
            return False
        self.append(OddsSample(ts=now, up=odds.up, down=odds.down, reference=reference))
        return True

    def samples(self) -> List[OddsSample]:
        return list(self._samples)

    def last(self, k: int) -> List[OddsSample]:
        if k <= 0:
            return []
        return list(self._samples)[-k:]

    def sustained_above(self, direction: str, bound: float, k: int) -> bool:
        tail = self.last(k)
        if len(tail) < k:
            return False
        return all(s.prob(direction) >= bound for s in tail)

    def rise(self, direction: str, k: int) -> Optional[float]:
        tail = self.last(k)
        if len(tail) < 2:
            return None
        return tail[-1].prob(direction) - tail[0].prob(direction)

    def momentum(self, direction: str = UP) -> Optional[float]:
        if len(self._samples) < 2:
            return None
        return self._samples[-1].prob(direction) - self._samples[0].prob(direction)


@dataclass(frozen=True)
class Checkpoint:
    at: int
    min_confidence: float


class CheckpointLadder:
    """Ordered checkpoints, each consumed at most once, whether it fires or not."""

    def __init__(self, checkpoints: List[Checkpoint]):
        for prev, cur in zip(checkpoints, checkpoints[1:]):
            if cur.at > prev.at:
                raise ValueError("checkpoint times must be non-increasing")
        self._checkpoints = list(checkpoints)
        self._idx = 0

    def __len__(self) -> int:
        return len(self._checkpoints)

    @property
    def next(self) -> Optional[Checkpoint]:
        if self._idx >= len(self._checkpoints):
            return None
        return self._checkpoints[self._idx]

    @property
    def following(self) -> Optional[Checkpoint]:
        if self._idx + 1 >= len(self._checkpoints):
            return None
        return self._checkpoints[self._idx + 1]

    @property
    def exhausted(self) -> bool:
        return self._idx >= len(self._checkpoints)

    @property
    def consumed(self) -> List[Checkpoint]:
        return self._checkpoints[: self._idx]

    def due(self, secs_left: int, floor: int) -> Optional[Checkpoint]:
        cp = self.next
        if cp is None:
            return None
        if secs_left > cp.at or secs_left < floor:
            return None
        return cp

    def consume(self) -> Checkpoint:
        cp = self.next
        if cp is None:
            raise IndexError("checkpoint ladder exhausted")
        self._idx += 1
        return cp


@dataclass
class ReferenceState:
    source: str = ""
    price: Optional[float] = None
    ts: float = 0.0

    def update(self, value, ts: float) -> bool:
        try:
            px = float(value)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(px) or px <= 0:
            return False
        self.price = px
        self.ts = ts
        return True


@dataclass
class WindowContext:
    window: MarketWindow
    odds: OddsState
    history: OddsHistory
    ladder: CheckpointLadder
    positions: List[Position] = field(default_factory=list)
    entry_in_flight: bool = False
    exit_in_flight: bool = False
    has_entry: bool = False
    early_entry_fired: bool = False
    last_resort_fired: bool = False
    stop_loss_fired: bool = False
    trades_this_window: int = 0
    last_trade_ts: float = 0.0
    price_to_beat_attempted: bool = False
    price_to_beat_retrying: bool = False
    price_to_beat_next_try: float = 0.0
    resting_orders: Dict[str, str] = field(default_factory=dict)
    resting_placed: bool = False
    resting_cancelled: bool = False
    passive_poll_in_flight: bool = False
    last_passive_poll: float = 0.0

    @classmethod
    def create(cls, window: MarketWindow, checkpoints: List[Checkpoint], history_capacity: int = 30) -> "WindowContext":
        odds = OddsState()
        if window.initial_up is not None:
            odds.set_side(UP, window.initial_up, 0.0)
        elif window.initial_down is not None:
            odds.set_side(DOWN, window.initial_down, 0.0)
        return cls(
            window=window,
            odds=odds,
            history=OddsHistory(history_capacity),
            ladder=CheckpointLadder(checkpoints),
        )

    @property
    def window_id(self) -> str:
        return self.window.market_id

    @property
    def price_to_beat(self) -> Optional[float]:
        return self.window.price_to_beat

    @property
    def busy(self) -> bool:
        return self.entry_in_flight or self.exit_in_flight

    def secs_left(self, now: float) -> int:
        return self.window.seconds_remaining(now)

    @property
    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.status == "open"]

    @property
    def position(self) -> Optional[Position]:
        open_ = self.open_positions
        return open_[0] if open_ else None

    def open_position_for(self, direction: str) -> Optional[Position]:
        for p in self.open_positions:
            if p.direction == direction:
                return p
        return None
