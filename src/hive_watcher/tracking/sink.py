"""Remote analytics sinks.

A sink exposes exactly four delivery primitives: track and import, each
for a single event or a batch. track is the live endpoint; import is the
backfill endpoint for events older than the live endpoint accepts.
Sinks do not route, normalize or merge super properties; the delivery
router does that before calling them.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Sequence

import httpx

from hive_watcher.errors import DeliveryFailure
from hive_watcher.models.events import Properties, TrackedEvent

logger = logging.getLogger("hive_watcher.tracking.sink")

# Largest batch the ingestion endpoints accept in one request
MAX_BATCH_SIZE = 50


class RemoteSink(ABC):
    """Abstract base for analytics sinks.

    Every call either returns normally (the sink acknowledged the
    events) or raises DeliveryFailure.
    """

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def track(self, name: str, properties: Properties) -> None:
        ...

    @abstractmethod
    async def track_batch(self, events: Sequence[TrackedEvent]) -> None:
        ...

    @abstractmethod
    async def import_event(
        self, name: str, time_seconds: int, properties: Properties
    ) -> None:
        ...

    @abstractmethod
    async def import_batch(self, events: Sequence[TrackedEvent]) -> None:
        ...

    async def close(self) -> None:
        """Release transport resources."""


class NullSink(RemoteSink):
    """Sink used when tracking is disabled. Every call succeeds silently."""

    @property
    def enabled(self) -> bool:
        return False

    async def track(self, name: str, properties: Properties) -> None:
        return None

    async def track_batch(self, events: Sequence[TrackedEvent]) -> None:
        return None

    async def import_event(
        self, name: str, time_seconds: int, properties: Properties
    ) -> None:
        return None

    async def import_batch(self, events: Sequence[TrackedEvent]) -> None:
        return None


class MixpanelSink(RemoteSink):
    """Mixpanel ingestion API over httpx.

    Live events go to /track and only need the project token. Backfilled
    events go to /import, authenticated with the API secret as the basic
    auth user.
    """

    def __init__(
        self,
        token: str,
        secret: str = "",
        api_host: str = "https://api.mixpanel.com",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._token = token
        self._secret = secret
        self._client = client or httpx.AsyncClient(
            base_url=api_host,
            timeout=httpx.Timeout(timeout),
        )

    def _event(self, name: str, properties: Properties) -> dict[str, Any]:
        return {"event": name, "properties": {**properties, "token": self._token}}

    async def _post(
        self, lane: str, endpoint: str, events: list[dict[str, Any]]
    ) -> None:
        auth = (self._secret, "") if endpoint == "/import" else None
        try:
            resp = await self._client.post(
                endpoint,
                data={
                    "data": json.dumps(events, separators=(",", ":")),
                    "verbose": "1",
                },
                auth=auth,
            )
        except httpx.HTTPError as e:
            raise DeliveryFailure(lane, len(events), str(e)) from e

        if resp.status_code >= 400:
            raise DeliveryFailure(
                lane, len(events), f"HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            body = resp.json()
        except ValueError as e:
            raise DeliveryFailure(lane, len(events), "invalid response body") from e
        if body.get("status") not in (1, "1", "OK"):
            raise DeliveryFailure(
                lane, len(events), str(body.get("error") or body)
            )
        logger.debug("Delivered %d event(s) via %s", len(events), endpoint)

    async def _post_chunked(
        self, lane: str, endpoint: str, events: list[dict[str, Any]]
    ) -> None:
        for start in range(0, len(events), MAX_BATCH_SIZE):
            await self._post(lane, endpoint, events[start:start + MAX_BATCH_SIZE])

    async def track(self, name: str, properties: Properties) -> None:
        await self._post("track", "/track", [self._event(name, properties)])

    async def track_batch(self, events: Sequence[TrackedEvent]) -> None:
        await self._post_chunked(
            "track", "/track",
            [self._event(e.name, e.properties) for e in events],
        )

    async def import_event(
        self, name: str, time_seconds: int, properties: Properties
    ) -> None:
        props = {**properties, "time": time_seconds}
        await self._post("import", "/import", [self._event(name, props)])

    async def import_batch(self, events: Sequence[TrackedEvent]) -> None:
        await self._post_chunked(
            "import", "/import",
            [self._event(e.name, e.properties) for e in events],
        )

    async def close(self) -> None:
        await self._client.aclose()


def build_sink(settings) -> RemoteSink:
    """Pick the sink for the configured tracking credentials."""
    if not settings.tracking_enabled or not settings.mp_token:
        return NullSink()
    return MixpanelSink(
        token=settings.mp_token,
        secret=settings.mp_secret,
        api_host=settings.mp_api_host,
    )
