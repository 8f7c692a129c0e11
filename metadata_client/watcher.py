import asyncio
import logging
import time
from typing import Awaitable, Callable

from .config import WATCH_RETRY_MS
from .errors import MetadataError
from .fetcher import MetadataFetcher
from .models import Snapshot
from .store import SnapshotStore

ChangeHandler = Callable[[Snapshot], Awaitable[None]]

class MetadataWatcher:
    """Background long-poll loop feeding changed snapshots to a handler."""
    def __init__(
        self,
        fetcher: MetadataFetcher,
        store: SnapshotStore,
        retry_ms: int = WATCH_RETRY_MS,
        on_change: ChangeHandler | None = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.retry_ms = retry_ms
        self.on_change = on_change
        self._log = logging.getLogger(__name__)
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self.last_cycle_ms: int | None = None
        self.fail_count: int = 0

    async def start(self):
        self._log.info(
            "starting metadata watch",
            extra={"event": "startup", "extra_fields": {"url": self.fetcher.base_url}},
        )
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        self._log.info("stopping metadata watch", extra={"event": "shutdown"})
        # Aborts an in-flight long poll; the fetcher turns that into "no result".
        self._stopping.set()
        if self._task:
            await self._task

    async def _run(self):
        while not self._stopping.is_set():
            t0 = time.time()
            changed = False
            try:
                snap = await self.fetcher.watch(self._stopping)
                if snap is None:
                    continue
                self.fail_count = 0
                changed = self.fetcher.changed or await self.store.get() is None
                if changed:
                    await self._apply(snap)
            except MetadataError as e:
                self.fail_count += 1
                self._log.error(
                    "watch error",
                    extra={"event": "watch.error", "extra_fields": {"error": repr(e), "retry": self.fail_count}},
                )
                await self._backoff()
            except Exception as e:
                # Handler or unexpected failure; keep watching.
                self.fail_count += 1
                self._log.error(
                    "watch error",
                    exc_info=True,
                    extra={"event": "watch.error", "extra_fields": {"error": repr(e), "retry": self.fail_count}},
                )
                await self._backoff()
            finally:
                self.last_cycle_ms = int((time.time() - t0) * 1000)
                self._log.debug(
                    "watch",
                    extra={
                        "event": "watch.run",
                        "extra_fields": {
                            "etag": self.fetcher.etag,
                            "changed": changed,
                            "cycle_ms": self.last_cycle_ms,
                            "retry": self.fail_count,
                        },
                    },
                )

    async def _apply(self, snap: Snapshot):
        await self.store.set(snap, self.fetcher.etag)
        self._log.info(
            "metadata changed",
            extra={"event": "watch.changed", "extra_fields": {"etag": self.fetcher.etag}},
        )
        if self.on_change is not None:
            await self.on_change(snap)

    async def _backoff(self):
        try:
            await asyncio.wait_for(self._stopping.wait(), self.retry_ms / 1000.0)
        except asyncio.TimeoutError:
            pass
