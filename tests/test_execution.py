"""
Unit tests for execution/ -- retry engine, dry-run executor, resting order fills.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeClock, SleepRecorder
from polymarket_sniper.execution.engine import BUY, SELL, OrderExecutionEngine, RetryPlan, attempt_price, round_price
from polymarket_sniper.execution.live import ClobCredentials, LiveExecutor, LiveOrderResult, floor_size
from polymarket_sniper.execution.passive import is_filled

ENTRY_STEPS = [0.03, 0.06, 0.10, 0.14, 0.14]
EXIT_STEPS = [0.02, 0.05, 0.10, 0.15]


def _executor(buy_results=None, sell_results=None):
    ex = MagicMock()
    ex.submit_buy = AsyncMock(side_effect=buy_results or [])
    ex.submit_sell = AsyncMock(side_effect=sell_results or [])
    return ex


def _miss(error="no_fill"):
    return LiveOrderResult(ok=False, error=error, logs=[f"rejected: {error}"])


def _fill(price, size=2.0):
    return LiveOrderResult(ok=True, filled=True, price=price, size=size, order_id="o1")


class TestPricing:
    def test_buy_adds_step_and_caps(self):
        plan = RetryPlan(side=BUY, slippage_steps=ENTRY_STEPS, delay_s=1.5, cutoff_s=3)
        assert attempt_price(plan, 0.90, 0.03) == 0.93
        assert attempt_price(plan, 0.90, 0.14) == 0.99

    def test_sell_subtracts_step_and_floors(self):
        plan = RetryPlan(side=SELL, slippage_steps=EXIT_STEPS, delay_s=0.5, cutoff_s=1)
        assert attempt_price(plan, 0.39, 0.02) == 0.37
        assert attempt_price(plan, 0.05, 0.15) == 0.01

    def test_round_to_tick(self):
        assert round_price(0.9349, 0.01) == 0.93
        assert round_price(0.4, 0) == 0.4

    def test_floor_size(self):
        assert floor_size(2 / 0.35) == 5.71
        assert floor_size(1.999) == 1.99


class TestOrderExecutionEngine:
    @pytest.mark.asyncio
    async def test_escalates_until_fill(self, quiet_log):
        """Each retry re-reads the live price and adds the next slippage step."""
        ex = _executor(buy_results=[_miss(), _miss(), _fill(0.99)])
        sleep = SleepRecorder()
        engine = OrderExecutionEngine(ex, quiet_log, sleep=sleep)
        prices = iter([0.90, 0.91, 0.93])
        plan = RetryPlan(side=BUY, slippage_steps=ENTRY_STEPS, delay_s=1.5, cutoff_s=3)

        out = await engine.buy("tok", 2.0, plan, lambda: next(prices), lambda: 25)

        assert out.filled
        assert out.reason == "filled"
        assert [a.target_price for a in out.attempts] == [0.93, 0.97, 0.99]
        assert [a.outcome for a in out.attempts] == ["error", "error", "filled"]
        assert sleep.calls == [1.5, 1.5]
        assert ex.submit_buy.await_args_list[0].args == ("tok", 2.0, 0.93)

    @pytest.mark.asyncio
    async def test_gives_up_after_all_steps(self, quiet_log):
        ex = _executor(sell_results=[_miss()] * 4)
        sleep = SleepRecorder()
        engine = OrderExecutionEngine(ex, quiet_log, sleep=sleep)
        plan = RetryPlan(side=SELL, slippage_steps=EXIT_STEPS, delay_s=0.5, cutoff_s=1)

        out = await engine.sell("tok", 2.85, plan, lambda: 0.39, lambda: 100)

        assert not out.filled
        assert out.reason == "exhausted"
        assert len(out.attempts) == 4
        assert [a.target_price for a in out.attempts] == [0.37, 0.34, 0.29, 0.24]
        assert sleep.calls == [0.5, 0.5, 0.5]
        assert out.error == "no_fill"

    @pytest.mark.asyncio
    async def test_cutoff_checked_before_every_attempt(self, quiet_log):
        """Once time left drops under the cutoff no further attempt is made."""
        clock = FakeClock(0.0)
        ex = _executor(buy_results=[_miss()] * 5)
        engine = OrderExecutionEngine(ex, quiet_log, sleep=SleepRecorder(clock))
        plan = RetryPlan(side=BUY, slippage_steps=ENTRY_STEPS, delay_s=1.5, cutoff_s=3)

        out = await engine.buy("tok", 2.0, plan, lambda: 0.9, lambda: int(6 - clock()))

        assert out.reason == "cutoff"
        # attempts at 6s and 4.5s (int 4) left; 3s left is still allowed; 1.5s is not
        assert ex.submit_buy.await_count == 3
        assert len(out.attempts) == 3

    @pytest.mark.asyncio
    async def test_already_past_cutoff(self, quiet_log):
        ex = _executor()
        engine = OrderExecutionEngine(ex, quiet_log, sleep=SleepRecorder())
        plan = RetryPlan(side=BUY, slippage_steps=ENTRY_STEPS, delay_s=1.5, cutoff_s=3)
        out = await engine.buy("tok", 2.0, plan, lambda: 0.9, lambda: 2)
        assert out.reason == "cutoff"
        assert out.attempts == []
        ex.submit_buy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_exception_becomes_failed_attempt(self, quiet_log):
        ex = _executor(buy_results=[RuntimeError("socket closed"), _fill(0.96)])
        engine = OrderExecutionEngine(ex, quiet_log, sleep=SleepRecorder())
        plan = RetryPlan(side=BUY, slippage_steps=ENTRY_STEPS, delay_s=1.5, cutoff_s=3)
        out = await engine.buy("tok", 2.0, plan, lambda: 0.9, lambda: 30)
        assert out.filled
        assert "socket closed" in out.attempts[0].error

    @pytest.mark.asyncio
    async def test_missing_live_price_skips_submit(self, quiet_log):
        ex = _executor(buy_results=[_fill(0.93)])
        engine = OrderExecutionEngine(ex, quiet_log, sleep=SleepRecorder())
        prices = iter([None, 0.90])
        plan = RetryPlan(side=BUY, slippage_steps=ENTRY_STEPS, delay_s=1.5, cutoff_s=3)
        out = await engine.buy("tok", 2.0, plan, lambda: next(prices), lambda: 30)
        assert out.filled
        assert out.attempts[0].error == "no_live_price"
        assert ex.submit_buy.await_count == 1

    @pytest.mark.asyncio
    async def test_diagnostics_are_logged(self, quiet_log):
        ex = _executor(buy_results=[_miss("insufficient liquidity"), _fill(0.96)])
        engine = OrderExecutionEngine(ex, quiet_log, sleep=SleepRecorder())
        plan = RetryPlan(side=BUY, slippage_steps=ENTRY_STEPS, delay_s=1.5, cutoff_s=3)
        await engine.buy("tok", 2.0, plan, lambda: 0.9, lambda: 30, label="checkpoint")
        lines = "\n".join(quiet_log.recent())
        assert "insufficient liquidity" in lines
        assert "rejected: insufficient liquidity" in lines


class TestLiveExecutorDryRun:
    def test_market_orders_fill_at_requested_price(self, make_cfg):
        ex = LiveExecutor(make_cfg())
        res = ex.place("tok", "BUY", 0.93, 2.15)
        assert res.ok and res.filled
        assert res.order_id == "dry_run"
        assert res.price == 0.93

    def test_resting_orders_do_not_fill(self, make_cfg):
        ex = LiveExecutor(make_cfg())
        res = ex.place("tok", "BUY", 0.35, 5.71, order_type="GTC")
        assert res.ok
        assert not res.filled

    def test_rejects_bad_inputs(self, make_cfg):
        ex = LiveExecutor(make_cfg())
        assert ex.place("", "BUY", 0.5, 1).error == "token_id_missing"
        assert ex.place("tok", "BUY", 0, 1).error == "invalid_price_or_size"

    def test_disabled(self, make_cfg):
        ex = LiveExecutor(make_cfg({"live": {"enabled": False}}))
        assert ex.place("tok", "BUY", 0.5, 1).error == "live_disabled"

    @pytest.mark.asyncio
    async def test_submit_buy_sizes_from_stake(self, make_cfg):
        ex = LiveExecutor(make_cfg())
        res = await ex.submit_buy("tok", 2.0, 0.35)
        assert res.size == 5.71

    @pytest.mark.asyncio
    async def test_submit_sell_floors_size(self, make_cfg):
        ex = LiveExecutor(make_cfg())
        res = await ex.submit_sell("tok", 2.8571, 0.37)
        assert res.size == 2.85
        assert res.filled

    def test_live_without_key_reports_error(self, make_cfg, monkeypatch):
        monkeypatch.delenv("POLYMARKET_PRIVATE_KEY", raising=False)
        ex = LiveExecutor(make_cfg({"live": {"dry_run": False}}))
        ex._ensure_client = lambda: (False, "POLYMARKET_PRIVATE_KEY is missing")
        res = ex.place("tok", "BUY", 0.5, 2)
        assert not res.ok
        assert "PRIVATE_KEY" in res.error


class TestRestingFill:
    @pytest.mark.parametrize(
        "order,expected",
        [
            ({"status": "MATCHED"}, True),
            ({"status": "filled"}, True),
            ({"status": "LIVE", "original_size": "5.71", "size_matched": "5.2"}, True),
            ({"status": "LIVE", "original_size": "5.71", "size_matched": "2"}, False),
            ({"status": "LIVE"}, False),
            (None, False),
        ],
    )
    def test_is_filled(self, order, expected):
        assert is_filled(order, 0.9) is expected


class TestClobCredentials:
    def test_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("POLYMARKET_PRIVATE_KEY", " 0xabc ")
        monkeypatch.setenv("POLYMARKET_API_KEY", "k")
        monkeypatch.setenv("POLYMARKET_API_SECRET", "s")
        monkeypatch.delenv("POLYMARKET_API_PASSPHRASE", raising=False)
        creds = ClobCredentials.from_env()
        assert creds.private_key == "0xabc"
        assert not creds.has_api_creds
        monkeypatch.setenv("POLYMARKET_API_PASSPHRASE", "p")
        assert ClobCredentials.from_env().has_api_creds
