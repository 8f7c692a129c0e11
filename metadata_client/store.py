import asyncio
import time
from dataclasses import dataclass

from .models import Snapshot

@dataclass
class StoredSnapshot:
    snapshot: Snapshot
    etag: str
    fetched_ms: int

class SnapshotStore:
    def __init__(self):
        self._lock = asyncio.Lock()
        self._entry: StoredSnapshot | None = None

    async def set(self, snapshot: Snapshot, etag: str) -> None:
        # Wholesale replacement, never merged with the previous snapshot.
        async with self._lock:
            self._entry = StoredSnapshot(snapshot=snapshot, etag=etag, fetched_ms=int(time.time() * 1000))

    async def get(self) -> StoredSnapshot | None:
        async with self._lock:
            return self._entry

    async def age_ms(self) -> int | None:
        s = await self.get()
        if not s:
            return None
        return int(time.time() * 1000) - s.fetched_ms
