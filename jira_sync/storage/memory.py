"""In-memory store used by tests and by dry runs."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from datetime import datetime

from jira_sync.core.models import IssueEvent, IssueState


class InMemoryStore:
    """Thread-safe ``IssueStore``; each replace swaps both entries under one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self.states: dict[str, IssueState] = {}
        self.events: dict[str, list[IssueEvent]] = {}
        self.replace_calls = 0

    def replace(self, key: str, state: IssueState, events: Sequence[IssueEvent]) -> None:
        new_events = list(events)
        with self._lock:
            self.replace_calls += 1
            self.states[key] = state
            self.events[key] = new_events

    def restart_watermark(self, n: int) -> datetime | None:
        if n < 1:
            raise ValueError(f"n must be >= 1, got {n}")
        with self._lock:
            recent = sorted((s.updated_at for s in self.states.values()), reverse=True)[:n]
        return recent[-1] if recent else None

    def create_schema(self) -> None:
        pass

    def drop_schema(self) -> None:
        with self._lock:
            self.states.clear()
            self.events.clear()

    def close(self) -> None:
        pass

    def event_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self.events.values())
