"""Event-sink pipeline.

Pulls podping events from the producer, derives insert ids, fans each
event out into one event per url, appends those to the daily NDJSON
files and hands them to the delivery router.

Intake is a single loop in arrival order. The side effects of an event
(file writes, deliveries) run as independent tasks, so a slow write or
a failing delivery never holds up the next event. Failures are logged
and counted per event; nothing a single event does stops the loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Coroutine

from hive_watcher.adapters.base import BaseAdapter, ConnectionState
from hive_watcher.errors import DeliveryFailure, IOFailure
from hive_watcher.models.events import RawEvent, TrackedEvent
from hive_watcher.storage.streams import StreamPool, partition_key
from hive_watcher.tracking.ids import insert_id
from hive_watcher.tracking.properties import normalize_props
from hive_watcher.tracking.router import DeliveryRouter

logger = logging.getLogger("hive_watcher.pipeline")

BLOCK_EVENT = "Hive Block"
URL_EVENT = "Hive URL"


@dataclass
class PipelineStats:
    """Counters since start."""
    events_received: int = 0
    process_failures: int = 0
    derived_events: int = 0
    writes: int = 0
    write_failures: int = 0
    deliveries: int = 0
    delivery_failures: int = 0
    open_streams: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def serialize(properties: dict[str, Any]) -> bytes:
    """One NDJSON record: normalized properties as compact UTF-8 JSON."""
    return json.dumps(
        normalize_props(properties),
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


class Pipeline:
    """Producer -> fan-out -> persist + deliver, with graceful shutdown.

    Args:
        adapter: Event producer.
        pool: Stream pool for the daily files.
        router: Delivery router for the remote sink.
        stream_idle_ttl: Seconds a file may stay idle before it is closed.
        eviction_interval: Seconds between idle eviction scans.
        max_in_flight: Events whose side effects may run at the same
            time; 0 disables the cap.
        connect_backoff: Seconds before the first connect retry.
        max_connect_backoff: Upper bound for the doubling retry delay.
    """

    def __init__(
        self,
        adapter: BaseAdapter,
        pool: StreamPool,
        router: DeliveryRouter,
        stream_idle_ttl: float = 120,
        eviction_interval: float = 60,
        max_in_flight: int = 256,
        connect_backoff: float = 1.0,
        max_connect_backoff: float = 60.0,
    ):
        self.adapter = adapter
        self.pool = pool
        self.router = router
        self.stream_idle_ttl = stream_idle_ttl
        self.eviction_interval = eviction_interval
        self.connect_backoff = connect_backoff
        self.max_connect_backoff = max_connect_backoff
        self._semaphore = asyncio.Semaphore(max_in_flight) if max_in_flight else None
        self._stats = PipelineStats()
        self._writes: set[asyncio.Task] = set()
        self._deliveries: set[asyncio.Task] = set()
        self._intake_task: asyncio.Task | None = None
        self._eviction_task: asyncio.Task | None = None
        self._stopping = False
        self._stopped = asyncio.Event()
        self._stop_requested = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stats(self) -> PipelineStats:
        self._stats.open_streams = len(self.pool)
        return PipelineStats(**asdict(self._stats))

    async def start(self) -> bool:
        """Connect the producer and start intake and idle eviction.

        A failed connect is retried with a doubling delay until it
        succeeds. Returns False only when stop() was called first.
        """
        delay = self.connect_backoff
        while not self._stopping:
            state = await self.adapter.connect()
            if state == ConnectionState.CONNECTED:
                break
            logger.error(
                "Producer failed to connect (%s), retrying in %.1fs",
                state.value, delay,
            )
            try:
                await asyncio.wait_for(self._stop_requested.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(delay * 2, self.max_connect_backoff)

        if self._stopping:
            if self.adapter.state == ConnectionState.CONNECTED:
                await self.adapter.disconnect()
            return False

        self._intake_task = asyncio.create_task(self._intake(), name="intake")
        self._eviction_task = asyncio.create_task(
            self._evict_periodically(), name="stream-eviction"
        )
        return True

    async def run(self) -> None:
        """Run until the producer ends or stop() is called."""
        if not await self.start():
            await self.stop()
            return
        await asyncio.wait({self._intake_task})
        if not self._intake_task.cancelled() and self._intake_task.exception():
            logger.error(
                "Intake failed", exc_info=self._intake_task.exception()
            )
        await self.stop()

    def process(self, raw: RawEvent) -> list[asyncio.Task]:
        """Start all side effects of one raw event and return their tasks."""
        self._stats.events_received += 1
        age = datetime.now(timezone.utc) - raw.blocktime
        logger.info(
            "Parsing block %s, was created %ds ago (%d)",
            raw.block_id, age.total_seconds(), raw.block_num,
        )

        tasks = [
            self._spawn(
                self._deliver_one(BLOCK_EVENT, raw.to_properties(
                    insert_id(raw.block_num, raw.block_id, raw.reason, raw.first_url)
                )),
                self._deliveries,
            )
        ]

        url_events: list[TrackedEvent] = []
        for derived in raw.fan_out():
            self._stats.derived_events += 1
            payload = derived.to_properties(
                insert_id(derived.block_num, derived.block_id, derived.reason, derived.url)
            )
            tasks.append(self._spawn(
                self._persist(partition_key(derived.blocktime), payload),
                self._writes,
            ))
            url_events.append(TrackedEvent(name=URL_EVENT, properties=payload))

        tasks.append(self._spawn(self._deliver_batch(url_events), self._deliveries))
        return tasks

    async def stop(self) -> None:
        """Stop intake, finish in-flight work and close every stream.

        Safe to call more than once or concurrently; later calls wait for
        the first one to finish.
        """
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        self._stop_requested.set()
        logger.info("Stopping...")

        for task in (self._intake_task, self._eviction_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self.adapter.disconnect()

        if self._writes:
            logger.info("Waiting for %d pending write(s)", len(self._writes))
            await asyncio.gather(*self._writes, return_exceptions=True)
        if self._deliveries:
            logger.info("Waiting for %d pending deliveries", len(self._deliveries))
            await asyncio.gather(*self._deliveries, return_exceptions=True)
        await self.router.drain()

        closed = await self.pool.evict_idle(0)
        await self.router.sink.close()
        logger.info(
            "Stopped, closed %d stream(s)", closed,
            extra={"stats": self._stats.to_dict()},
        )
        self._stopped.set()

    async def _intake(self) -> None:
        events = self.adapter.stream()
        try:
            async for raw in events:
                if self._stopping:
                    break
                if self._semaphore is not None:
                    await self._semaphore.acquire()
                try:
                    tasks = self.process(raw)
                except Exception:
                    self._stats.process_failures += 1
                    logger.exception(
                        "Skipping event from block %s", raw.block_num
                    )
                    if self._semaphore is not None:
                        self._semaphore.release()
                    continue
                if self._semaphore is not None:
                    settled = asyncio.gather(*tasks, return_exceptions=True)
                    settled.add_done_callback(lambda _: self._semaphore.release())
        finally:
            await events.aclose()
        if not self._stopping:
            logger.warning("Event stream ended")

    def _spawn(self, coro: Coroutine[Any, Any, None], bucket: set[asyncio.Task]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        bucket.add(task)
        task.add_done_callback(bucket.discard)
        return task

    async def _persist(self, key: str, payload: dict[str, Any]) -> None:
        try:
            await self.pool.write(key, serialize(payload))
            self._stats.writes += 1
        except IOFailure as e:
            self._stats.write_failures += 1
            logger.error(
                "Dropping write of %s: %s", payload.get("$insert_id"), e
            )
        except Exception:
            self._stats.write_failures += 1
            logger.exception("Unexpected error writing %s", payload.get("$insert_id"))

    async def _deliver_one(self, name: str, payload: dict[str, Any]) -> None:
        try:
            await self.router.track(name, payload)
            self._stats.deliveries += 1
        except DeliveryFailure as e:
            self._stats.delivery_failures += 1
            logger.error("Failed to deliver %s: %s", name, e)
        except Exception:
            self._stats.delivery_failures += 1
            logger.exception("Unexpected error delivering %s", name)

    async def _deliver_batch(self, events: list[TrackedEvent]) -> None:
        try:
            await self.router.batch(events)
            self._stats.deliveries += len(events)
        except DeliveryFailure as e:
            self._stats.delivery_failures += 1
            logger.error("Failed to deliver %d url event(s): %s", len(events), e)
        except Exception:
            self._stats.delivery_failures += 1
            logger.exception("Unexpected error delivering url events")

    async def _evict_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.eviction_interval)
            try:
                evicted = await self.pool.evict_idle(self.stream_idle_ttl * 1000)
                if evicted:
                    logger.info("Evicted %d idle stream(s)", evicted)
            except Exception:
                logger.exception("Idle stream eviction failed")
