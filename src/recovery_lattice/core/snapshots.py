"""Bounded snapshot buffering between the coordinator and the run store."""

import time
from collections import deque
from typing import TYPE_CHECKING

from ..observability.logging import get_logger
from .models import Snapshot
from .result import Result

if TYPE_CHECKING:
    from ..storage.run_store import RunStore

logger = get_logger(__name__)


class SnapshotBuffer:
    """
    Collects a run's snapshots and writes them to the store in batches.

    A batch is written when the buffer is full or when ``flush_interval_ms``
    has passed since the last write. The buffer never holds more than
    ``max_snapshots`` entries; the oldest pending snapshot is dropped first.
    """

    def __init__(self, store: "RunStore", max_snapshots: int = 240, flush_interval_ms: int = 25):
        self.store = store
        self.max_snapshots = max_snapshots
        self.flush_interval_ms = flush_interval_ms
        self._pending: deque[Snapshot] = deque(maxlen=max_snapshots)
        self._captured: list[Snapshot] = []
        self._last_flush = time.monotonic()
        self.dropped = 0

    @property
    def captured(self) -> tuple[Snapshot, ...]:
        """Every snapshot accepted by this buffer, flushed or not."""
        return tuple(self._captured)

    def __len__(self) -> int:
        return len(self._pending)

    def _due(self) -> bool:
        if len(self._pending) >= self.max_snapshots:
            return True
        return (time.monotonic() - self._last_flush) * 1000 >= self.flush_interval_ms

    async def add(self, snapshot: Snapshot) -> Result[int]:
        if len(self._pending) == self.max_snapshots:
            self.dropped += 1
        self._pending.append(snapshot)
        self._captured.append(snapshot)
        if len(self._captured) > self.max_snapshots:
            self._captured.pop(0)
        if self._due():
            return await self.flush()
        return Result.success(0)

    async def flush(self) -> Result[int]:
        """Write pending snapshots; stops at the first store failure."""
        written = 0
        while self._pending:
            snapshot = self._pending[0]
            result = await self.store.append_snapshot(snapshot)
            if not result.ok:
                logger.error(
                    "Snapshot flush failed", run_id=snapshot.run_id, error=str(result.error)
                )
                return Result.failure(result.error, partial=written)
            self._pending.popleft()
            written += 1
        self._last_flush = time.monotonic()
        return Result.success(written)
