#!/usr/bin/env python3
"""Offline summary of the engine's JSONL event log.

Usage: session_report.py [events.jsonl] [--hours N]
"""

import argparse
import json
import time
from collections import Counter, defaultdict
from datetime import datetime
from pathlib import Path

from polymarket_sniper.utils.storage import read_events

EVENTS = Path(__file__).resolve().parents[1] / "data" / "events.jsonl"


def to_epoch(v):
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return datetime.fromisoformat(v.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def summarize(events, since=None):
    trades, rollovers, losses = [], [], []
    feed_drops = Counter()
    for e in events:
        t = to_epoch(e.get("ts"))
        if since is not None and (not t or t < since):
            continue
        typ = e.get("type")
        if typ == "trade":
            trades.append(e.get("trade") or {})
        elif typ == "window_rollover":
            rollovers.append(e)
        elif typ == "loss_report":
            losses.append(e)
        elif typ == "feed_status" and e.get("status") in ("disconnected", "reconnecting"):
            feed_drops[e.get("feed") or "-"] += 1

    by_type = Counter(t.get("type") or "-" for t in trades)
    ok_by_type = Counter(t.get("type") or "-" for t in trades if t.get("success"))
    by_strategy = Counter(t.get("strategy") or "-" for t in trades if t.get("success") and t.get("type") in ("ENTRY", "ARB_ENTRY", "PASSIVE_FILL"))
    exit_pnl = defaultdict(float)
    for t in trades:
        if t.get("success") and t.get("pnl_usd") is not None:
            exit_pnl[t.get("reason") or "-"] += float(t["pnl_usd"])

    settled = [r for r in rollovers if r.get("had_position")]
    settled_pnl = sum(float(r.get("settled_pnl_usd") or 0.0) for r in settled)
    outcomes = Counter(r.get("outcome") or "unknown" for r in rollovers)
    attempts = [int(t.get("attempts") or 0) for t in trades if t.get("type") in ("ENTRY", "ARB_ENTRY")]

    return {
        "windows": len(rollovers),
        "windows_with_position": len(settled),
        "outcomes": dict(outcomes),
        "trades": dict(by_type),
        "filled": dict(ok_by_type),
        "entries_by_strategy": dict(by_strategy),
        "avg_entry_attempts": round(sum(attempts) / len(attempts), 2) if attempts else 0.0,
        "exit_pnl_by_reason": {k: round(v, 4) for k, v in exit_pnl.items()},
        "settled_pnl_usd": round(settled_pnl, 4),
        "stop_losses": len(losses),
        "stop_loss_usd": round(sum(float(e.get("loss_usd") or 0.0) for e in losses), 4),
        "stop_loss_triggers": dict(Counter(e.get("trigger") or "-" for e in losses)),
        "feed_drops": dict(feed_drops),
    }


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("events", nargs="?", default=str(EVENTS))
    parser.add_argument("--hours", type=float, default=None)
    args = parser.parse_args()
    since = time.time() - args.hours * 3600 if args.hours else None
    out = summarize(read_events(args.events), since)
    print(json.dumps(out, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
