"""Delivery routing between the live and the backfill endpoint.

The live track endpoint rejects events older than a few days. Those
have to go through import instead, which needs the API secret. The
router decides per event which lane to use, merges super properties,
normalizes, and calls the sink.

Batch delivery runs both lanes concurrently. The batch succeeds only
when every non-empty lane succeeds and fails with the first lane error.
The other lane keeps running; its outcome is logged, never dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping

from hive_watcher.errors import ConfigurationGap, DeliveryFailure
from hive_watcher.models.events import (
    DISTINCT_ID_KEY,
    TIME_KEY,
    DeliveryBatch,
    TrackedEvent,
)
from hive_watcher.tracking.properties import SuperProperties, to_epoch_seconds
from hive_watcher.tracking.sink import RemoteSink

logger = logging.getLogger("hive_watcher.tracking.router")

ONE_DAY_SECONDS = 86400
# Age after which an event must be imported rather than tracked
IMPORT_AGE_DAYS = 4.5


def event_time_seconds(value: Any) -> float | None:
    """Epoch seconds for a datetime or numeric time value, else None."""
    if isinstance(value, datetime):
        return to_epoch_seconds(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


class DeliveryRouter:
    """Routes tracked events to the track or import lane of a sink."""

    def __init__(
        self,
        sink: RemoteSink,
        super_props: SuperProperties,
        has_secret: bool,
        clock: Callable[[], float] = time.time,
    ):
        self.sink = sink
        self.super_props = super_props
        self.has_secret = has_secret
        self._clock = clock
        self._orphans: set[asyncio.Task] = set()

        if not sink.enabled:
            logger.info("Tracking is disabled")
        else:
            logger.info(
                "Tracking enabled with super props",
                extra={"super_properties": super_props.as_dict()},
            )

    def import_threshold(self) -> float:
        """Epoch seconds before which events must be imported."""
        now = round(self._clock())
        return now - ONE_DAY_SECONDS * IMPORT_AGE_DAYS

    def use_import(self, event: TrackedEvent) -> bool:
        props = event.properties
        if DISTINCT_ID_KEY not in props or TIME_KEY not in props:
            return False

        seconds = event_time_seconds(props[TIME_KEY])
        if seconds is None or seconds >= self.import_threshold():
            logger.debug("Track is fine for event %s", event.name)
            return False

        if not self.has_secret:
            gap = ConfigurationGap("API secret is required for the import api")
            logger.warning(
                "%s, tracking old event %s instead", gap, event.name,
                extra={"event_time": seconds},
            )
            return False

        logger.debug("Event %s is too old for track, using import", event.name)
        return True

    def prepare(self, name: str, properties: Mapping[str, Any] | None) -> TrackedEvent:
        """Merge super properties and normalize."""
        return TrackedEvent(name=name, properties=self.super_props.apply(properties))

    def partition(self, events: Iterable[TrackedEvent]) -> DeliveryBatch:
        batch = DeliveryBatch()
        for event in events:
            if self.use_import(event):
                batch.import_lane.append(event)
            else:
                batch.track_lane.append(event)
        return batch

    async def batch(self, events: Iterable[TrackedEvent]) -> None:
        """Deliver a list of events through both lanes concurrently."""
        if not self.sink.enabled:
            return

        lanes = self.partition(self.prepare(e.name, e.properties) for e in events)
        logger.debug(
            "Using batch tracking",
            extra={
                "import_list_length": len(lanes.import_lane),
                "track_list_length": len(lanes.track_lane),
            },
        )

        calls: dict[str, tuple[int, Awaitable[None]]] = {}
        if lanes.import_lane:
            calls["import"] = (
                len(lanes.import_lane), self.sink.import_batch(lanes.import_lane)
            )
        if lanes.track_lane:
            calls["track"] = (
                len(lanes.track_lane), self.sink.track_batch(lanes.track_lane)
            )
        await self._join_lanes(calls)

    async def track(self, name: str, properties: Mapping[str, Any] | None = None) -> None:
        """Deliver a single event through whichever lane its age calls for."""
        if not self.sink.enabled:
            return

        event = self.prepare(name, properties)
        if self.use_import(event):
            seconds = int(event_time_seconds(event.time))
            rest = {k: v for k, v in event.properties.items() if k != TIME_KEY}
            logger.debug("Track %s via import due to time", name)
            await self._deliver("import", 1, self.sink.import_event(name, seconds, rest))
        else:
            await self._deliver("track", 1, self.sink.track(name, event.properties))

    async def drain(self) -> None:
        """Wait for lanes that outlived a failed batch."""
        if self._orphans:
            await asyncio.gather(*self._orphans, return_exceptions=True)

    async def _deliver(self, lane: str, size: int, call: Awaitable[None]) -> None:
        try:
            await call
        except DeliveryFailure:
            logger.error("Delivery via %s failed", lane, extra={"lane": lane, "size": size})
            raise

    async def _join_lanes(self, calls: dict[str, tuple[int, Awaitable[None]]]) -> None:
        """Wait for every lane; fail fast on the first lane error."""
        if not calls:
            return

        tasks: dict[asyncio.Task, tuple[str, int]] = {
            asyncio.ensure_future(call): (lane, size)
            for lane, (size, call) in calls.items()
        }
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_EXCEPTION
                )
                failed = [
                    t for t in done
                    if not t.cancelled() and t.exception() is not None
                ]
                if failed:
                    lane, size = tasks[failed[0]]
                    logger.error(
                        "Delivery via %s failed", lane,
                        extra={"lane": lane, "size": size},
                    )
                    for task in pending:
                        self._adopt(task, *tasks[task])
                    raise failed[0].exception()
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            raise

    def _adopt(self, task: asyncio.Task, lane: str, size: int) -> None:
        """Keep a still-running lane alive and log how it ends."""
        self._orphans.add(task)

        def _done(t: asyncio.Task) -> None:
            self._orphans.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "Delivery via %s failed after batch had already failed: %s",
                    lane, exc,
                    extra={"lane": lane, "size": size},
                )
            else:
                logger.debug("Lane %s completed after batch failure", lane)

        task.add_done_callback(_done)
