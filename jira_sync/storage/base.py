"""Store interface consumed by the sync engine."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from jira_sync.core.models import IssueEvent, IssueState


class IssueStore(Protocol):
    def replace(self, key: str, state: IssueState, events: Sequence[IssueEvent]) -> None:
        """Atomically swap every row of ``key`` for the new state and events.

        Raises ``StoreError`` on failure, in which case the previous rows are intact.
        """
        ...

    def restart_watermark(self, n: int) -> datetime | None:
        """Return the n-th highest stored ``updated_at``.

        With fewer than ``n`` states the oldest one is returned; ``None`` only
        when the store is empty.
        """
        ...

    def create_schema(self) -> None: ...

    def drop_schema(self) -> None: ...

    def close(self) -> None: ...
