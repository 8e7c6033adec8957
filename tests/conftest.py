"""Pytest configuration for the Hive Watcher test suite."""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

# Ensure test environment variables are set before any imports
os.environ.setdefault("HIVE_WATCHER_LOG_LEVEL", "warning")
os.environ.setdefault("HIVE_WATCHER_TRACKING_ENABLED", "false")

from hive_watcher.errors import DeliveryFailure  # noqa: E402
from hive_watcher.models.events import RawEvent  # noqa: E402
from hive_watcher.tracking.sink import RemoteSink  # noqa: E402


class RecordingSink(RemoteSink):
    """In-memory sink that records every call per lane.

    fail: lanes ('track', 'track_batch', 'import', 'import_batch') that
    raise DeliveryFailure. delays: seconds to sleep per lane first.
    """

    def __init__(self, fail=(), delays=None):
        self.fail = set(fail)
        self.delays = delays or {}
        self.calls: list[tuple[str, object]] = []
        self.closed = False

    async def _record(self, lane, payload, size=1):
        await asyncio.sleep(self.delays.get(lane, 0))
        if lane in self.fail:
            raise DeliveryFailure(lane, size, "rejected")
        self.calls.append((lane, payload))

    def lane(self, name):
        return [payload for lane, payload in self.calls if lane == name]

    async def track(self, name, properties):
        await self._record("track", (name, properties))

    async def track_batch(self, events):
        await self._record("track_batch", list(events), len(events))

    async def import_event(self, name, time_seconds, properties):
        await self._record("import", (name, time_seconds, properties))

    async def import_batch(self, events):
        await self._record("import_batch", list(events), len(events))

    async def close(self):
        self.closed = True


def make_raw_event(
    urls=("https://feeds.example.com/a.xml",),
    blocktime=None,
    block_num=53_000_000,
    reason="update",
    **extra,
) -> RawEvent:
    """RawEvent with sensible defaults; blocktime defaults to an hour ago."""
    if blocktime is None:
        blocktime = datetime.now(timezone.utc) - timedelta(hours=1)
    return RawEvent(
        block_id=f"{block_num:08x}" + "ab" * 16,
        block_num=block_num,
        blocktime=blocktime,
        posting_auth="podping.aaa",
        reason=reason,
        trx_id="f" * 40,
        op_id="pp_podcast_update",
        medium="podcast",
        version="1.0",
        urls=list(urls),
        **extra,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def sink_factory():
    return RecordingSink


@pytest.fixture
def make_event():
    return make_raw_event
