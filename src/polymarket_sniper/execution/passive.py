from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from polymarket_sniper.config import EngineConfig
from polymarket_sniper.engine.context import WindowContext
from polymarket_sniper.events import EventLog
from polymarket_sniper.execution.live import LiveExecutor, floor_size
from polymarket_sniper.models import DOWN, UP
from polymarket_sniper.sim.paper import paper_resting_fill

FILLED_STATUSES = ("MATCHED", "FILLED")


def _f(x) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return 0.0


def is_filled(order: Optional[dict], fill_ratio: float = 0.9) -> bool:
    if not order:
        return False
    if str(order.get("status") or "").upper() in FILLED_STATUSES:
        return True
    original = _f(order.get("original_size"))
    matched = _f(order.get("size_matched"))
    return original > 0 and matched >= fill_ratio * original


@dataclass
class RestingFill:
    direction: str
    order_id: str
    price: float
    size: float


class PassiveRestingManager:
    """Resting limit buys on both sides of a window; the first fill wins."""

    def __init__(self, executor: LiveExecutor, cfg: EngineConfig, log: EventLog):
        self.executor = executor
        self.cfg = cfg
        self.log = log

    @property
    def limit_price(self) -> float:
        return self.cfg.strategies.passive_resting.limit_price

    def size(self) -> float:
        return floor_size(self.cfg.execution.stake_usd / self.limit_price)

    async def place(self, ctx: WindowContext) -> int:
        ctx.resting_placed = True
        placed = 0
        for direction in (UP, DOWN):
            token = ctx.window.token_for(direction)
            res = await self.executor.submit_buy(
                token, self.cfg.execution.stake_usd, self.limit_price, order_type=self.executor.resting_order_type
            )
            for line in res.logs:
                self.log.log(f"    [resting] {line}")
            if not res.ok or not res.order_id:
                self.log.log(f"Resting {direction} BUY @ {self.limit_price:.2f} failed: {res.error}", "red")
                continue
            ctx.resting_orders[direction] = res.order_id
            placed += 1
            self.log.log(f"Resting {direction} BUY {self.size():.2f} @ {self.limit_price:.2f} order={res.order_id}")
        return placed

    async def poll(self, ctx: WindowContext) -> Optional[RestingFill]:
        ratio = self.cfg.strategies.passive_resting.fill_ratio
        for direction, order_id in list(ctx.resting_orders.items()):
            if self.executor.dry_run:
                filled = paper_resting_fill(ctx.odds.prob(direction), self.limit_price)
                size = self.size()
            else:
                order = await self.executor.order_status_async(order_id)
                filled = is_filled(order, ratio)
                size = _f((order or {}).get("size_matched")) or self.size()
            if filled:
                ctx.resting_orders.pop(direction, None)
                return RestingFill(direction=direction, order_id=order_id, price=self.limit_price, size=size)
        return None

    async def cancel_other(self, ctx: WindowContext, filled_direction: str) -> None:
        for direction, order_id in list(ctx.resting_orders.items()):
            if direction == filled_direction:
                continue
            await self._cancel(ctx, direction, order_id)

    async def cancel_remaining(self, ctx: WindowContext) -> None:
        ctx.resting_cancelled = True
        for direction, order_id in list(ctx.resting_orders.items()):
            await self._cancel(ctx, direction, order_id)

    async def _cancel(self, ctx: WindowContext, direction: str, order_id: str) -> None:
        res = await self.executor.cancel_async(order_id)
        if res.ok:
            ctx.resting_orders.pop(direction, None)
            self.log.log(f"Cancelled resting {direction} order {order_id}")
        else:
            self.log.log(f"Cancel {direction} order {order_id} failed: {res.error}", "red")
