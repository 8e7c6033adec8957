"""Abstract event producer interface.

All chain adapters implement this contract. The interface has exactly
two responsibilities: transport (how to get events) and health (is the
connection alive). Adapters do NOT hash, fan out, persist or track
events; the pipeline does that.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator

from hive_watcher.models.events import RawEvent

logger = logging.getLogger("hive_watcher.adapters")


class ConnectionState(str, Enum):
    """Adapter connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class AdapterHealth:
    """Health snapshot for an adapter connection."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    adapter_type: str = ""
    endpoint: str = ""
    last_event_at: datetime | None = None
    last_block_num: int | None = None
    events_delivered: int = 0
    errors: int = 0
    checked_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class BaseAdapter(ABC):
    """Abstract base for event producers.

    The contract:
    - connect(): establish connection, resolve the start position
    - stream(): yield events continuously as an async iterator
    - health(): report current connection state
    - disconnect(): stop streaming and clean up resources

    Configuration is passed as a plain dict built from Settings.
    """

    def __init__(self, config: dict[str, Any]):
        self.config = config
        self._state = ConnectionState.DISCONNECTED
        self._events_delivered = 0
        self._errors = 0
        self._last_event_at: datetime | None = None
        self._last_block_num: int | None = None

    @property
    @abstractmethod
    def adapter_type(self) -> str:
        """Return the adapter type identifier (e.g. 'hive_poller')."""
        ...

    @abstractmethod
    async def connect(self) -> ConnectionState:
        """Establish connection to the event source.

        Must not raise -- connection failures return FAILED state.
        """
        ...

    @abstractmethod
    def stream(self) -> AsyncIterator[RawEvent]:
        """Yield events continuously, in source order.

        Implementations handle reconnection internally and resume where
        they left off. The iterator ends once disconnect() is called.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release all resources and close connections."""
        ...

    @property
    def state(self) -> ConnectionState:
        return self._state

    def health(self) -> AdapterHealth:
        """Report current adapter health."""
        return AdapterHealth(
            state=self._state,
            adapter_type=self.adapter_type,
            endpoint=self.config.get("endpoint", ""),
            last_event_at=self._last_event_at,
            last_block_num=self._last_block_num,
            events_delivered=self._events_delivered,
            errors=self._errors,
        )

    def _record_event(self, event: RawEvent) -> None:
        """Track event delivery metrics. Call from subclass on each event."""
        self._events_delivered += 1
        self._last_event_at = datetime.now(timezone.utc)
        self._last_block_num = event.block_num

    def _record_error(self, msg: str) -> None:
        """Track errors. Call from subclass on failures."""
        self._errors += 1
        logger.warning(
            "Adapter %s error: %s", self.adapter_type, msg,
        )
