"""Log lines and structured events.

Every line ends up in three places: a bounded buffer shown in snapshots, the
console (rich markup) and the JSONL event log. Structured events skip the
console and additionally reach any registered listener.
"""

from __future__ import annotations

import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, List, Optional

from rich import print
from rich.markup import escape

from polymarket_sniper.utils.storage import append_event

Listener = Callable[[dict], None]


class EventLog:
    def __init__(
        self,
        events_path: Optional[str] = None,
        buffer_size: int = 80,
        console: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.events_path = events_path
        self.console = console
        self.clock = clock
        self._buffer: deque = deque(maxlen=max(1, int(buffer_size)))
        self._listeners: List[Listener] = []

    def add_listener(self, cb: Listener) -> None:
        self._listeners.append(cb)

    def recent(self, n: Optional[int] = None) -> List[str]:
        lines = list(self._buffer)
        return lines if n is None else lines[-n:]

    def log(self, line: str, style: str = "") -> str:
        stamp = datetime.fromtimestamp(self.clock(), tz=timezone.utc).strftime("%H:%M:%S")
        entry = f"[{stamp}] {line}"
        self._buffer.append(entry)
        if self.console:
            body = escape(entry)
            print(f"[{style}]{body}[/{style}]" if style else body)
        if self.events_path:
            append_event(self.events_path, {"type": "log", "line": line})
        return entry

    def emit(self, type: str, persist: bool = True, **fields) -> dict:
        event = {"type": type, **fields}
        if persist and self.events_path:
            append_event(self.events_path, event)
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception as e:
                self._buffer.append(f"listener error: {e}")
        return event
