"""
Unit tests for engine/signals.py -- early entry, checkpoints, last resort,
divergence arbitrage and the status string.
"""

import math

import pytest

from conftest import ARB_ONLY, CLOSE_TS
from polymarket_sniper.engine.context import Checkpoint, OddsSample
from polymarket_sniper.engine.signals import (
    CHECKPOINT,
    DIVERGENCE_ARB,
    EARLY_ENTRY,
    LAST_RESORT,
    SignalEvaluator,
    describe_signal,
    implied_probability,
)
from polymarket_sniper.models import DOWN, UP


def _fill_history(ctx, ups, start_ts=0.0):
    for i, up in enumerate(ups):
        ctx.history.append(OddsSample(ts=start_ts + 2.0 * i, up=up, down=1 - up))


@pytest.fixture
def evaluator(make_cfg, quiet_log):
    return SignalEvaluator(make_cfg(), quiet_log)


class TestEarlyEntry:
    def test_sustained_leader_fires_once(self, evaluator, make_ctx):
        """0.95 held for 3 samples at T-180 fires early entry exactly once."""
        ctx = make_ctx(up=0.95)
        _fill_history(ctx, [0.95, 0.95, 0.96])
        sig = evaluator.evaluate(ctx, None, CLOSE_TS - 180)
        assert sig is not None
        assert sig.strategy == EARLY_ENTRY
        assert sig.direction == UP
        assert sig.cutoff_s == 180 - 17
        assert ctx.early_entry_fired

        _fill_history(ctx, [0.96, 0.97], start_ts=6.0)
        assert evaluator.evaluate(ctx, None, CLOSE_TS - 176) is None

    def test_single_spike_does_not_fire(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.97)
        _fill_history(ctx, [0.80, 0.85, 0.97])
        assert evaluator.evaluate(ctx, None, CLOSE_TS - 180) is None
        assert not ctx.early_entry_fired

    def test_outside_window_does_not_fire(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.95)
        _fill_history(ctx, [0.95, 0.95, 0.95])
        assert evaluator.evaluate(ctx, None, CLOSE_TS - 260) is None

    def test_down_leader(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.04)
        _fill_history(ctx, [0.05, 0.04, 0.04])
        sig = evaluator.evaluate(ctx, None, CLOSE_TS - 100)
        assert sig.direction == DOWN
        assert math.isclose(sig.odds, 0.96)


class TestCheckpoints:
    def test_below_bar_consumes_and_moves_on(self, evaluator, make_ctx):
        """At T-30 a 0.80 leader misses the 0.90 bar; T-30 is consumed and T-20 is next."""
        ctx = make_ctx(up=0.80)
        assert evaluator.evaluate(ctx, None, CLOSE_TS - 30) is None
        assert [c.at for c in ctx.ladder.consumed] == [30]
        assert ctx.ladder.next.at == 20

        assert evaluator.evaluate(ctx, None, CLOSE_TS - 29) is None
        assert [c.at for c in ctx.ladder.consumed] == [30]

        ctx.odds.up = 0.88
        sig = evaluator.evaluate(ctx, None, CLOSE_TS - 20)
        assert sig.strategy == CHECKPOINT
        assert sig.checkpoint.at == 20
        assert sig.cutoff_s == 3

    def test_fires_when_bar_met(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.08)
        sig = evaluator.evaluate(ctx, None, CLOSE_TS - 30)
        assert sig.direction == DOWN
        assert sig.checkpoint.at == 30
        assert sig.cutoff_s == 13

    def test_not_due_before_threshold(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.99)
        assert evaluator.evaluate(ctx, None, CLOSE_TS - 31) is None
        assert ctx.ladder.consumed == []

    def test_missed_checkpoints_are_expired(self, evaluator, make_ctx):
        """Joining at T-15 skips T-30 unevaluated and evaluates T-20 instead."""
        ctx = make_ctx(up=0.88)
        sig = evaluator.evaluate(ctx, None, CLOSE_TS - 15)
        assert sig.checkpoint.at == 20
        assert [c.at for c in ctx.ladder.consumed] == [30, 20]

    def test_equal_thresholds_are_each_evaluated(self, evaluator, make_ctx):
        """Two checkpoints sharing T-20 are evaluated in order; the stricter one fires first."""
        ctx = make_ctx(up=0.97, checkpoints=[Checkpoint(20, 0.95), Checkpoint(20, 0.80)])
        sig = evaluator.evaluate(ctx, None, CLOSE_TS - 20)
        assert sig.checkpoint.min_confidence == 0.95
        assert [c.min_confidence for c in ctx.ladder.consumed] == [0.95]

    def test_pending_checkpoint_evaluated_on_reaching_the_next(self, evaluator, make_ctx):
        """A T-30 checkpoint still pending at exactly T-20 is evaluated, not expired."""
        ctx = make_ctx(up=0.92)
        sig = evaluator.evaluate(ctx, None, CLOSE_TS - 20)
        assert sig.checkpoint.at == 30
        assert ctx.ladder.next.at == 20

    def test_confirmation_filter_blocks_unconfirmed_move(self, make_cfg, quiet_log, make_ctx):
        ev = SignalEvaluator(make_cfg({"strategies": {"checkpoints": {"require_reference_move": True}}}), quiet_log)
        ctx = make_ctx(up=0.95, price_to_beat=100_000.0)
        assert ev.evaluate(ctx, 100_004.0, CLOSE_TS - 30) is None
        assert ctx.ladder.next.at == 20

        sig = ev.evaluate(ctx, 100_012.0, CLOSE_TS - 20)
        assert sig is not None and sig.direction == UP

    def test_confirmation_filter_requires_leader_direction(self, make_cfg, quiet_log, make_ctx):
        ev = SignalEvaluator(make_cfg({"strategies": {"checkpoints": {"require_reference_move": True}}}), quiet_log)
        ctx = make_ctx(up=0.05, price_to_beat=100_000.0)
        assert ev.evaluate(ctx, 100_050.0, CLOSE_TS - 30) is None
        sig = ev.evaluate(ctx, 99_980.0, CLOSE_TS - 20)
        assert sig.direction == DOWN

    def test_confirmation_filter_skipped_without_data(self, make_cfg, quiet_log, make_ctx):
        ev = SignalEvaluator(make_cfg({"strategies": {"checkpoints": {"require_reference_move": True}}}), quiet_log)
        ctx = make_ctx(up=0.95)
        assert ev.evaluate(ctx, None, CLOSE_TS - 30) is not None

    def test_no_signal_once_entered_or_busy(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.95)
        ctx.entry_in_flight = True
        assert evaluator.evaluate(ctx, None, CLOSE_TS - 30) is None
        ctx.entry_in_flight = False
        ctx.has_entry = True
        assert evaluator.evaluate(ctx, None, CLOSE_TS - 30) is None


class TestLastResort:
    def test_reference_move_buys_favoured_side(self, evaluator, make_ctx):
        """All checkpoints gone, T-2, reference $20 above open: buy UP with no confidence check."""
        ctx = make_ctx(up=0.52, price_to_beat=100_000.0)
        while not ctx.ladder.exhausted:
            ctx.ladder.consume()
        sig = evaluator.evaluate(ctx, 100_020.0, CLOSE_TS - 2)
        assert sig.strategy == LAST_RESORT
        assert sig.direction == UP
        assert sig.cutoff_s == 1
        assert ctx.last_resort_fired

    def test_unvisited_checkpoints_expire_below_floor(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.40, price_to_beat=100_000.0)
        sig = evaluator.evaluate(ctx, 99_980.0, CLOSE_TS - 2)
        assert ctx.ladder.exhausted
        assert sig.direction == DOWN

    def test_surge_buys_surging_side(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.35, price_to_beat=100_000.0)
        while not ctx.ladder.exhausted:
            ctx.ladder.consume()
        _fill_history(ctx, [0.50, 0.60, 0.66])
        sig = evaluator.evaluate(ctx, 100_001.0, CLOSE_TS - 3)
        assert sig.direction == UP

    def test_nothing_to_go_on(self, evaluator, make_ctx):
        ctx = make_ctx(up=0.55, price_to_beat=100_000.0)
        while not ctx.ladder.exhausted:
            ctx.ladder.consume()
        _fill_history(ctx, [0.50, 0.52, 0.55])
        assert evaluator.evaluate(ctx, 100_005.0, CLOSE_TS - 2) is None
        assert not ctx.last_resort_fired

    def test_pending_checkpoint_goes_first(self, evaluator, make_ctx):
        """A checkpoint still due at T-3 wins over last resort on the same tick."""
        ctx = make_ctx(up=0.90, price_to_beat=100_000.0)
        ctx.ladder.consume()
        ctx.ladder.consume()
        sig = evaluator.evaluate(ctx, 100_050.0, CLOSE_TS - 3)
        assert sig.strategy == CHECKPOINT
        assert sig.checkpoint.at == 10
        assert not ctx.last_resort_fired


class TestImpliedProbability:
    def test_same_move_more_confident_near_close(self):
        """A 0.3% move implies more at T-20 than at T-250."""
        early = implied_probability(100_300.0, 100_000.0, 250)
        late = implied_probability(100_300.0, 100_000.0, 20)
        assert early < late
        assert math.isclose(late, 1 / (1 + math.exp(-2.0 * math.sqrt(300 / 20) * 0.3)))
        assert math.isclose(early, 1 / (1 + math.exp(-2.0 * math.sqrt(300 / 250) * 0.3)))

    def test_flat_is_even(self):
        assert math.isclose(implied_probability(100.0, 100.0, 60), 0.5)

    def test_time_floor(self):
        assert implied_probability(101.0, 100.0, 2) == implied_probability(101.0, 100.0, 10)

    def test_extreme_move_does_not_overflow(self):
        assert implied_probability(1_000_000.0, 1.0, 1) == pytest.approx(1.0)
        assert implied_probability(1.0, 1_000_000.0, 1) == pytest.approx(0.0)

    def test_missing_inputs(self):
        assert implied_probability(None, 100.0, 60) is None
        assert implied_probability(100.0, None, 60) is None


class TestDivergenceArb:
    def _ctx(self, make_ctx, up_ask=0.60, down_ask=0.45):
        ctx = make_ctx(up=0.55, price_to_beat=100_000.0)
        ctx.odds.quotes[UP].ask = up_ask
        ctx.odds.quotes[DOWN].ask = down_ask
        return ctx

    def test_fires_on_divergence(self, make_cfg, quiet_log, make_ctx):
        ev = SignalEvaluator(make_cfg(ARB_ONLY), quiet_log)
        ctx = self._ctx(make_ctx)
        sig = ev.evaluate_arb(ctx, 100_300.0, CLOSE_TS - 100)
        assert sig.strategy == DIVERGENCE_ARB
        assert sig.direction == UP
        assert sig.divergence > 0.05
        assert math.isclose(sig.divergence, sig.implied - 0.60)

    def test_down_side_checked_after_up(self, make_cfg, quiet_log, make_ctx):
        ev = SignalEvaluator(make_cfg(ARB_ONLY), quiet_log)
        ctx = self._ctx(make_ctx, up_ask=0.40, down_ask=0.30)
        sig = ev.evaluate_arb(ctx, 99_700.0, CLOSE_TS - 100)
        assert sig.direction == DOWN

    def test_no_second_position_on_same_side(self, make_cfg, quiet_log, make_ctx):
        from polymarket_sniper.models import Position

        ev = SignalEvaluator(make_cfg(ARB_ONLY), quiet_log)
        ctx = self._ctx(make_ctx)
        ctx.positions.append(
            Position(id="p1", market_id="m", direction=UP, token_id="tok-up", strategy=DIVERGENCE_ARB, stake_usd=2, size=3, entry_price=0.6)
        )
        assert ev.evaluate_arb(ctx, 100_300.0, CLOSE_TS - 100) is None

    @pytest.mark.parametrize("secs", [10, 290])
    def test_time_bounds(self, make_cfg, quiet_log, make_ctx, secs):
        ev = SignalEvaluator(make_cfg(ARB_ONLY), quiet_log)
        ctx = self._ctx(make_ctx)
        assert ev.evaluate_arb(ctx, 100_300.0, CLOSE_TS - secs) is None

    def test_cooldown(self, make_cfg, quiet_log, make_ctx):
        ev = SignalEvaluator(make_cfg(ARB_ONLY), quiet_log)
        ctx = self._ctx(make_ctx)
        now = CLOSE_TS - 100
        ctx.last_trade_ts = now - 1
        assert ev.evaluate_arb(ctx, 100_300.0, now) is None
        ctx.last_trade_ts = now - 4
        assert ev.evaluate_arb(ctx, 100_300.0, now) is not None


class TestDescribeSignal:
    def test_waiting_for_next_checkpoint(self, make_cfg, make_ctx):
        ctx = make_ctx(up=0.6)
        assert describe_signal(ctx, make_cfg(), CLOSE_TS - 100) == "WAIT -> T-30 (need 90%+)"

    def test_skip_after_missed_bar(self, make_cfg, make_ctx):
        ctx = make_ctx(up=0.6)
        ctx.ladder.consume()
        assert describe_signal(ctx, make_cfg(), CLOSE_TS - 25).startswith("SKIP (UP 60.0% < 90%)")

    def test_in_flight_and_closing(self, make_cfg, make_ctx):
        ctx = make_ctx(up=0.6)
        ctx.entry_in_flight = True
        assert describe_signal(ctx, make_cfg(), CLOSE_TS - 25) == "PLACING TRADE..."
        ctx.entry_in_flight = False
        assert describe_signal(ctx, make_cfg(), CLOSE_TS + 1) == "MARKET CLOSING"

    def test_no_window(self, make_cfg):
        assert describe_signal(None, make_cfg(), 0) == "SEEKING WINDOW"

    def test_arb_scanning_and_buy(self, make_cfg, make_ctx):
        cfg = make_cfg(ARB_ONLY)
        ctx = make_ctx(up=0.55, price_to_beat=100_000.0)
        ctx.odds.quotes[UP].ask = 0.99
        ctx.odds.quotes[DOWN].ask = 0.99
        assert describe_signal(ctx, cfg, CLOSE_TS - 100, 100_300.0) == "SCANNING"
        ctx.odds.quotes[UP].ask = 0.60
        assert describe_signal(ctx, cfg, CLOSE_TS - 100, 100_300.0).startswith(">>> BUY UP (div +")
