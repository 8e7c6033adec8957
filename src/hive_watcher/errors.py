"""Error taxonomy for the event-sink pipeline.

None of these are fatal to the process. The pipeline isolates them per
event and per delivery lane, and they only surface through logs.
"""

from __future__ import annotations


class HiveWatcherError(Exception):
    """Base class for all pipeline errors."""


class IOFailure(HiveWatcherError):
    """A stream file could not be opened, written or closed."""

    def __init__(self, path: str, cause: BaseException | None = None):
        self.path = path
        self.cause = cause
        super().__init__(f"I/O failure on {path}: {cause}")


class DeliveryFailure(HiveWatcherError):
    """The remote sink rejected a delivery call."""

    def __init__(self, lane: str, size: int, message: str):
        self.lane = lane
        self.size = size
        super().__init__(f"{lane} delivery of {size} event(s) failed: {message}")


class ConfigurationGap(HiveWatcherError):
    """An optional capability is not configured (e.g. the import secret)."""
