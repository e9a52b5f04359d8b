"""
Durable background location buffer.

While the host app is suspended, a background-capable collaborator keeps
appending fixes here; the state machine polls get_buffered_fixes_since()
once per poll interval and feeds the result through the same filter and
segment logic as live fixes.

Each fix lives under its own key, `background_location:<timestamp>`, with the
timestamp zero-padded so key order is time order. Appends never rewrite
earlier fixes, so the collaborator and the poller can write concurrently.

The cursor is a timestamp: a poll returns the fixes strictly newer than it,
in timestamp order, and deletes the ones at or before it (already consumed).
"""
import asyncio
import logging
import math
from typing import Iterable, List, Optional

from runtrack.models.location import LocationFix
from runtrack.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

BUFFER_PREFIX = "background_location:"


def buffer_key(timestamp_millis: int, prefix: str = BUFFER_PREFIX) -> str:
    return f"{prefix}{timestamp_millis:015d}"


class DurableLocationBuffer:
    def __init__(self, store: KeyValueStore, prefix: str = BUFFER_PREFIX):
        self.store = store
        self.prefix = prefix

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    def _timestamp(self, key: str) -> int:
        return int(key[len(self.prefix):])

    def _append(self, fixes: List[LocationFix]) -> None:
        for fix in fixes:
            ts = fix.timestamp_millis
            if isinstance(ts, float) and not math.isfinite(ts):
                logger.warning("Not buffering fix without a usable timestamp: %r", ts)
                continue
            self.store.put(buffer_key(int(ts), self.prefix), fix.to_dict())

    def _take_since(self, cursor: Optional[int]) -> List[LocationFix]:
        fixes = []
        for key in self.store.keys(self.prefix):
            if cursor is not None and self._timestamp(key) <= cursor:
                self.store.delete(key)
                continue
            data = self.store.get(key)
            if data:  # pruned by a concurrent poll since listing
                fixes.append(LocationFix.from_dict(data))
        return fixes

    async def append(self, fixes: Iterable[LocationFix]) -> None:
        """Used by the background collaborator to record new fixes."""
        await self._run(self._append, list(fixes))

    async def get_buffered_fixes_since(self, cursor: Optional[int]) -> List[LocationFix]:
        fixes = await self._run(self._take_since, cursor)
        return sorted(fixes, key=lambda f: f.timestamp_millis)

    async def pending_count(self) -> int:
        return len(await self._run(self.store.keys, self.prefix))

    async def clear(self) -> None:
        for key in await self._run(self.store.keys, self.prefix):
            await self._run(self.store.delete, key)
