"""Bounded retry execution for entries and exits.

Each attempt re-reads the live price, adds the attempt's slippage step and
submits. Time remaining is checked before every attempt, so a window that is
closing (or already replaced) stops the loop on its own.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from polymarket_sniper.events import EventLog
from polymarket_sniper.execution.live import LiveExecutor, LiveOrderResult
from polymarket_sniper.models import TradeAttempt

BUY = "BUY"
SELL = "SELL"


@dataclass
class RetryPlan:
    side: str
    slippage_steps: List[float]
    delay_s: float
    cutoff_s: int
    min_price: float = 0.01
    max_price: float = 0.99
    tick: float = 0.01


@dataclass
class ExecutionOutcome:
    filled: bool
    side: str
    token_id: str
    price: Optional[float] = None
    size: Optional[float] = None
    order_id: Optional[str] = None
    reason: str = ""  # filled / cutoff / exhausted
    error: Optional[str] = None
    attempts: List[TradeAttempt] = field(default_factory=list)


def round_price(px: float, tick: float) -> float:
    if tick <= 0:
        return float(px)
    return round(round(float(px) / tick) * tick, 6)


def attempt_price(plan: RetryPlan, live: float, step: float) -> float:
    if plan.side == BUY:
        px = min(live + step, plan.max_price)
    else:
        px = max(live - step, plan.min_price)
    px = round_price(px, plan.tick)
    return max(plan.min_price, min(plan.max_price, px))


class OrderExecutionEngine:
    def __init__(
        self,
        executor: LiveExecutor,
        log: EventLog,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.executor = executor
        self.log = log
        self.sleep = sleep

    async def buy(
        self,
        token_id: str,
        stake_usd: float,
        plan: RetryPlan,
        live_price: Callable[[], Optional[float]],
        secs_left: Callable[[], int],
        label: str = "",
    ) -> ExecutionOutcome:
        async def submit(price: float) -> LiveOrderResult:
            return await self.executor.submit_buy(token_id, stake_usd, price)

        return await self._run(token_id, plan, live_price, secs_left, submit, label)

    async def sell(
        self,
        token_id: str,
        size: float,
        plan: RetryPlan,
        live_price: Callable[[], Optional[float]],
        secs_left: Callable[[], int],
        label: str = "",
    ) -> ExecutionOutcome:
        async def submit(price: float) -> LiveOrderResult:
            return await self.executor.submit_sell(token_id, size, price)

        return await self._run(token_id, plan, live_price, secs_left, submit, label)

    async def _run(self, token_id, plan: RetryPlan, live_price, secs_left, submit, label: str) -> ExecutionOutcome:
        out = ExecutionOutcome(filled=False, side=plan.side, token_id=token_id, reason="exhausted")
        total = len(plan.slippage_steps)
        tag = f"{label} " if label else ""

        for i, step in enumerate(plan.slippage_steps, start=1):
            left = secs_left()
            if left < plan.cutoff_s:
                self.log.log(f"{tag}{plan.side} stopped before attempt {i}/{total}: {left}s left < cutoff {plan.cutoff_s}s", "yellow")
                out.reason = "cutoff"
                break

            attempt = TradeAttempt(attempt=i, side=plan.side, slippage=step, secs_left=left)
            out.attempts.append(attempt)

            live = live_price()
            if live is None or live <= 0:
                attempt.outcome = "error"
                attempt.error = "no_live_price"
                out.error = attempt.error
                self.log.log(f"{tag}{plan.side} attempt {i}/{total}: no live price", "red")
            else:
                attempt.live_price = live
                attempt.target_price = attempt_price(plan, live, step)
                try:
                    res = await submit(attempt.target_price)
                except Exception as e:
                    res = LiveOrderResult(ok=False, error=f"submit_raised: {e}")
                attempt.logs = list(res.logs)
                if res.ok and res.filled:
                    attempt.outcome = "filled"
                    out.filled = True
                    out.reason = "filled"
                    out.error = None
                    out.price = res.price if res.price is not None else attempt.target_price
                    out.size = res.size
                    out.order_id = res.order_id
                    self.log.log(
                        f"{tag}{plan.side} filled on attempt {i}/{total} @ {out.price:.2f} (live {live:.2f} {'+' if plan.side == BUY else '-'}{step:.2f})",
                        "green",
                    )
                    return out
                attempt.outcome = "error" if not res.ok else "not_filled"
                attempt.error = res.error or "not_filled"
                out.error = attempt.error
                self.log.log(
                    f"{tag}{plan.side} attempt {i}/{total} @ {attempt.target_price:.2f} failed: {attempt.error}",
                    "red",
                )
                for line in res.logs:
                    self.log.log(f"  {line}")

            if i < total:
                await self.sleep(plan.delay_s)

        if out.reason == "exhausted":
            self.log.log(f"{tag}{plan.side} gave up after {len(out.attempts)} attempt(s)", "red")
        return out
