import copy

import pytest

from polymarket_sniper.config import build_config
from polymarket_sniper.engine.context import Checkpoint, WindowContext
from polymarket_sniper.events import EventLog
from polymarket_sniper.loop import Engine
from polymarket_sniper.models import MarketWindow

OPEN_TS = 1_760_000_100.0
CLOSE_TS = OPEN_TS + 300


class FakeClock:
    def __init__(self, t: float = OPEN_TS):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds

    def at_secs_left(self, secs: float, close_ts: float = CLOSE_TS) -> float:
        self.t = close_ts - secs
        return self.t


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns at once and optionally moves a fake clock."""

    def __init__(self, clock: FakeClock = None):
        self.calls = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


def _merge(base: dict, over: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in over.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


ARB_ONLY = {
    "strategies": {
        "early_entry": {"enabled": False},
        "checkpoints": {"enabled": False},
        "last_resort": {"enabled": False},
        "divergence_arb": {"enabled": True},
    }
}

PASSIVE_ONLY = {
    "strategies": {
        "early_entry": {"enabled": False},
        "checkpoints": {"enabled": False},
        "last_resort": {"enabled": False},
        "passive_resting": {"enabled": True},
    }
}


@pytest.fixture
def make_cfg(tmp_path):
    def _make(*overrides):
        raw = {
            "app": {"console_status": False},
            "storage": {
                "events_path": str(tmp_path / "events.jsonl"),
                "snapshot_path": str(tmp_path / "snapshot.json"),
                "session_path": str(tmp_path / "session.json"),
            },
        }
        for o in overrides:
            raw = _merge(raw, o)
        return build_config(raw)

    return _make


@pytest.fixture
def make_window():
    def _make(open_ts: float = OPEN_TS, price_to_beat=None, suffix: str = "") -> MarketWindow:
        return MarketWindow(
            market_id=f"m{int(open_ts)}{suffix}",
            slug=f"btc-updown-5m-{int(open_ts)}{suffix}",
            title="Bitcoin Up or Down",
            open_ts=open_ts,
            close_ts=open_ts + 300,
            up_token=f"tok-up{suffix}",
            down_token=f"tok-down{suffix}",
            price_to_beat=price_to_beat,
        )

    return _make


@pytest.fixture
def make_ctx(make_window):
    def _make(price_to_beat=None, checkpoints=None, up=None) -> WindowContext:
        cps = checkpoints or [Checkpoint(30, 0.90), Checkpoint(20, 0.87), Checkpoint(10, 0.85)]
        ctx = WindowContext.create(make_window(price_to_beat=price_to_beat), cps)
        if up is not None:
            ctx.odds.up = up
        return ctx

    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quiet_log(tmp_path, clock):
    return EventLog(str(tmp_path / "events.jsonl"), console=False, clock=clock)


@pytest.fixture
def make_engine(make_cfg, quiet_log, clock):
    def _make(*overrides, sleep=None) -> Engine:
        cfg = make_cfg(*overrides)
        return Engine(cfg, quiet_log, clock=clock, sleep=sleep or SleepRecorder())

    return _make
