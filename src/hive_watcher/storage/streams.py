"""Pool of daily append-only NDJSON files.

Derived events are written to <data_folder>/<YYYY-MM-DD>.ndjson, one
file per UTC day of the block time. Each day has at most one open
handle. Handles idle longer than a threshold are closed by a periodic
eviction scan, and all of them are closed on shutdown.

Blocking file calls run in worker threads via asyncio.to_thread. The
pool lock guards the key -> handle mapping, and each handle has its own
lock so writes to one file stay in arrival order and a close never
interleaves with a write.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import BinaryIO, Callable

from hive_watcher.errors import IOFailure

logger = logging.getLogger("hive_watcher.storage.streams")

FILE_SUFFIX = ".ndjson"
RECORD_SEPARATOR = b"\n"


def partition_key(event_time: datetime) -> str:
    """UTC calendar date of event_time as YYYY-MM-DD."""
    if event_time.tzinfo is not None:
        event_time = event_time.astimezone(timezone.utc)
    return event_time.date().isoformat()


class StreamHandle:
    """One open append-mode file for a single partition key."""

    def __init__(self, key: str, path: str, file: BinaryIO, now: float):
        self.key = key
        self.path = path
        self.last_touched = now
        self.lock = asyncio.Lock()
        self.pending = 0
        self.closed = False
        self._file = file

    def touch(self, now: float) -> None:
        self.last_touched = now

    def idle_for(self, now: float) -> float:
        """Milliseconds since the last write."""
        return (now - self.last_touched) * 1000

    async def append(self, data: bytes) -> None:
        """Append data. The caller must hold self.lock."""
        await asyncio.to_thread(self._write, data)

    def _write(self, data: bytes) -> None:
        self._file.write(data)
        self._file.flush()

    async def close(self) -> None:
        """Close after any write in progress. Closing twice is a no-op."""
        async with self.lock:
            if self.closed:
                return
            self.closed = True
            await asyncio.to_thread(self._file.close)


class StreamPool:
    """Lazily opened, idle-evicted file handles keyed by partition key."""

    def __init__(
        self,
        data_folder: str,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.data_folder = data_folder
        self._clock = clock
        self._handles: dict[str, StreamHandle] = {}
        self._lock = asyncio.Lock()

    def path_for(self, key: str) -> str:
        return os.path.join(self.data_folder, f"{key}{FILE_SUFFIX}")

    async def acquire(self, key: str) -> StreamHandle:
        """Existing handle for key (touched), or a newly opened one."""
        async with self._lock:
            return await self._acquire_locked(key)

    async def _acquire_locked(self, key: str) -> StreamHandle:
        now = self._clock()
        handle = self._handles.get(key)
        if handle is not None:
            handle.touch(now)
            return handle

        path = self.path_for(key)
        logger.debug("Creating new file at %s", path)
        try:
            file = await asyncio.to_thread(self._open, path)
        except OSError as e:
            raise IOFailure(path, e) from e

        handle = StreamHandle(key, path, file, now)
        self._handles[key] = handle
        return handle

    @staticmethod
    def _open(path: str) -> BinaryIO:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        return open(path, "ab")

    async def write(self, key: str, payload: bytes) -> None:
        """Append payload plus a newline to the file for key."""
        while True:
            async with self._lock:
                handle = await self._acquire_locked(key)
                handle.pending += 1
            try:
                async with handle.lock:
                    if handle.closed:
                        # Evicted while we waited; open a fresh handle
                        continue
                    try:
                        await handle.append(payload + RECORD_SEPARATOR)
                    except OSError as e:
                        raise IOFailure(handle.path, e) from e
                    handle.touch(self._clock())
                    return
            finally:
                handle.pending -= 1

    async def evict_idle(self, threshold_ms: float) -> int:
        """Close handles idle for longer than threshold_ms.

        A threshold of zero or less closes every handle, waiting for
        writes in progress first. Otherwise handles with writes in
        flight are kept. Close failures are logged and do not stop the
        scan. Returns the number of handles evicted.
        """
        now = self._clock()
        async with self._lock:
            victims = [
                h for h in self._handles.values()
                if threshold_ms <= 0
                or (h.pending == 0 and h.idle_for(now) > threshold_ms)
            ]
            for handle in victims:
                del self._handles[handle.key]

        if not victims:
            return 0

        results = await asyncio.gather(
            *(h.close() for h in victims), return_exceptions=True
        )
        for handle, result in zip(victims, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to close stream %s: %s", handle.path, result
                )
            else:
                logger.debug("Closed idle stream %s", handle.path)
        return len(victims)

    async def close_all(self) -> int:
        return await self.evict_idle(0)

    def keys(self) -> list[str]:
        return sorted(self._handles)

    def __len__(self) -> int:
        return len(self._handles)
