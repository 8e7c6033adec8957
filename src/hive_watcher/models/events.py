"""Podping event models.

A RawEvent is one podping custom_json operation exactly as the producer
read it from the chain. Fan-out turns it into one DerivedEvent per url.
Both are immutable once created; the pipeline, the stream pool and the
delivery router only ever read them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

# Closed set of value kinds a tracked property may hold
PropertyValue = Union[
    str, int, float, bool, datetime, list[Union[str, int, float]], None
]
Properties = dict[str, Any]

TIME_KEY = "time"
DISTINCT_ID_KEY = "distinct_id"
INSERT_ID_KEY = "$insert_id"


class _HiveEvent(BaseModel):
    """Fields shared by raw and derived podping events."""
    block_id: str = Field(
        description="Hex id of the block holding the operation"
    )
    block_num: int = Field(
        description="Block height, also the numeric prefix of insert ids"
    )
    blocktime: datetime = Field(
        description="Block timestamp (UTC)"
    )
    posting_auth: str = Field(
        description="Account that signed the operation (the distinct actor)"
    )
    reason: Optional[str] = Field(
        default=None,
        description="Podping reason, e.g. 'update' or 'live'"
    )
    trx_id: Optional[str] = None
    op_id: Optional[str] = Field(
        default=None,
        description="custom_json id, e.g. 'podping' or 'pp_podcast_update'"
    )
    medium: Optional[str] = None
    version: Optional[str] = None

    class Config:
        frozen = True
        extra = "allow"

    def to_properties(self, insert_id: str) -> Properties:
        """Tracking payload: time, distinct id and insert id, then every
        other field of the event."""
        rest = self.model_dump(exclude={"blocktime"})
        return {
            TIME_KEY: self.blocktime,
            DISTINCT_ID_KEY: self.posting_auth,
            INSERT_ID_KEY: insert_id,
            **rest,
        }


class RawEvent(_HiveEvent):
    """One podping operation with all of its urls."""
    urls: list[str] = Field(
        default_factory=list,
        description="Feed urls announced by the operation (may be empty)"
    )

    @property
    def first_url(self) -> str:
        return self.urls[0] if self.urls else ""

    def fan_out(self) -> list[DerivedEvent]:
        """One derived event per url, in url order.

        An event without urls still yields a single derived event, with
        url set to None.
        """
        base = self.model_dump(exclude={"urls"})
        if not self.urls:
            return [DerivedEvent(**base, url=None)]
        return [DerivedEvent(**base, url=url) for url in self.urls]


class DerivedEvent(_HiveEvent):
    """A RawEvent narrowed down to a single url."""
    url: Optional[str] = None


class TrackedEvent(BaseModel):
    """An event on its way to the remote sink."""
    name: str
    properties: Properties = Field(default_factory=dict)

    class Config:
        frozen = True

    @property
    def time(self) -> Any:
        return self.properties.get(TIME_KEY)


@dataclass
class DeliveryBatch:
    """A list of tracked events split into the two delivery lanes.

    Both lanes keep the order of the input list.
    """
    import_lane: list[TrackedEvent] = field(default_factory=list)
    track_lane: list[TrackedEvent] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.import_lane) + len(self.track_lane)
