"""Property normalization and super properties.

All wire-format coercion of outgoing properties happens here: the event
time becomes whole epoch seconds, other datetimes become ISO-8601 UTC
strings and the distinct id becomes a string. Nothing else in the
package converts property types.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any

from hive_watcher.models.events import DISTINCT_ID_KEY, TIME_KEY, Properties

logger = logging.getLogger("hive_watcher.tracking.properties")


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC already
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_seconds(value: datetime) -> int:
    return round(_as_utc(value).timestamp())


def to_iso(value: date) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    if not isinstance(value, datetime):
        return value.isoformat()
    text = _as_utc(value).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def normalize_value(key: str, value: Any) -> Any:
    """Apply the first matching rule to a single property."""
    if not value:
        return value

    if key == TIME_KEY and isinstance(value, datetime):
        return to_epoch_seconds(value)

    if isinstance(value, date):
        try:
            return to_iso(value)
        except (ValueError, OverflowError) as e:
            logger.error(
                "Failed to convert date property %s=%r: %s", key, value, e
            )
            return value

    if key == DISTINCT_ID_KEY:
        return str(value)

    return value


def normalize_props(props: Mapping[str, Any] | None) -> Properties:
    """Return a wire-safe copy of props. None gives an empty dict."""
    if not props:
        return {}
    return {key: normalize_value(key, value) for key, value in props.items()}


class SuperProperties:
    """Properties merged into every outgoing event.

    One instance is owned by the service and handed to the delivery
    router. Event properties override super properties on conflict.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._props: Properties = normalize_props(initial)

    def register(self, props: Mapping[str, Any]) -> None:
        self._props.update(normalize_props(props))

    def unregister(self, name: str) -> None:
        self._props.pop(name, None)

    def apply(self, props: Mapping[str, Any] | None) -> Properties:
        """Merge props over the super properties and normalize the result."""
        return normalize_props({**self._props, **(props or {})})

    def as_dict(self) -> Properties:
        return dict(self._props)
