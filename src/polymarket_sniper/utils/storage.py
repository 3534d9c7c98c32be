from __future__ import annotations
import json
from pathlib import Path
from datetime import datetime, timezone
from pydantic import BaseModel
from polymarket_sniper.models import SessionState


def load_state(path: str) -> SessionState:
    p = Path(path)
    if not p.exists():
        return SessionState()
    data = json.loads(p.read_text())
    return SessionState.model_validate(data)


def save_state(path: str, state: BaseModel) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(state.model_dump_json(indent=2))


def append_event(path: str, event: dict) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    event = {"ts": datetime.now(timezone.utc).isoformat(), **event}
    with p.open("a") as f:
        f.write(json.dumps(event, default=str) + "\n")


def read_events(path: str) -> list[dict]:
    p = Path(path)
    if not p.exists():
        return []
    out = []
    for line in p.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            out.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return out
