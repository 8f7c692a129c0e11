import asyncio
import logging

import httpx

from .config import CLIENT_TIMEOUT_SEC, HANG_TIMEOUT_SEC, METADATA_URL
from .decoder import MalformedKeyMemo, decode_snapshot
from .errors import FetchError
from .models import Snapshot

DEFAULT_ETAG = "NONE"
FLAVOR_HEADERS = {"Metadata-Flavor": "Google"}

class ChangeGate:
    """Last seen etag. Observes changes, never filters responses."""
    def __init__(self, etag: str = DEFAULT_ETAG):
        self.etag = etag

    def update(self, new_etag: str | None) -> bool:
        old = self.etag
        self.etag = new_etag or DEFAULT_ETAG
        return self.etag != old

class MetadataFetcher:
    """
    Fetches and decodes the recursive metadata document.

    The etag gate and the malformed-key memo belong to this instance, so one
    fetcher serves one watch loop; run concurrent watches on separate
    fetchers.
    """
    def __init__(
        self,
        base_url: str = METADATA_URL,
        *,
        hang_timeout_sec: int = HANG_TIMEOUT_SEC,
        timeout_sec: float = CLIENT_TIMEOUT_SEC,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url
        self.hang_timeout_sec = hang_timeout_sec
        self.timeout_sec = timeout_sec
        self._log = logging.getLogger(__name__)
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)
        self._owns_client = client is None
        self.gate = ChangeGate()
        self.bad_keys = MalformedKeyMemo()
        self.changed: bool = False

    @property
    def etag(self) -> str:
        return self.gate.etag

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MetadataFetcher":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def watch(self, cancel: asyncio.Event) -> Snapshot | None:
        """Long poll: wait for a change, then refresh the etag from the response."""
        return await self._fetch(cancel, hang=True)

    async def get(self, cancel: asyncio.Event | None = None) -> Snapshot | None:
        """Immediate read. Leaves the etag alone so a running watch is not disturbed."""
        return await self._fetch(cancel or asyncio.Event(), hang=False)

    def _params(self, hang: bool) -> dict[str, str]:
        params = {"recursive": "true", "alt": "json"}
        if hang:
            params["wait_for_change"] = "true"
            params["timeout_sec"] = str(self.hang_timeout_sec)
        params["last_etag"] = self.gate.etag
        return params

    async def _fetch(self, cancel: asyncio.Event, hang: bool) -> Snapshot | None:
        if cancel.is_set():
            # Shutting down; not a fetch failure.
            return None

        request = asyncio.ensure_future(
            self._client.get(
                self.base_url, params=self._params(hang), headers=FLAVOR_HEADERS, timeout=self.timeout_sec
            )
        )
        stopped = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {request, stopped}, timeout=self.timeout_sec, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (request, stopped):
                if not task.done():
                    task.cancel()

        if request not in done:
            if cancel.is_set():
                self._log.info("metadata request cancelled", extra={"event": "fetch.cancelled"})
                return None
            raise FetchError(f"metadata request timed out after {self.timeout_sec}s")

        try:
            resp = request.result()
        except httpx.HTTPError as e:
            if cancel.is_set():
                self._log.info("metadata request cancelled", extra={"event": "fetch.cancelled"})
                return None
            raise FetchError(f"metadata request failed: {e!r}") from e

        if not resp.is_success:
            raise FetchError(f"metadata request returned {resp.status_code}", status=resp.status_code)

        # The etag is refreshed even when it did not change.
        if hang:
            self.changed = self.gate.update(resp.headers.get("ETag"))
            self._log.debug(
                "etag updated",
                extra={"event": "fetch.etag", "extra_fields": {"etag": self.gate.etag, "changed": self.changed}},
            )

        return decode_snapshot(resp.content, self.bad_keys)
