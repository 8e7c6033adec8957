"""Deterministic insert ids.

Mixpanel drops events whose $insert_id it has already seen, so an id
derived only from the event content makes replays after a restart safe.
"""

from __future__ import annotations

import hashlib

MAX_INSERT_ID_LENGTH = 36
PART_SEPARATOR = "-"


def content_hash(*parts: object) -> str:
    """SHA-256 hex digest of the parts joined with '-'."""
    joined = PART_SEPARATOR.join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def insert_id(prefix: int | str, *parts: object) -> str:
    """Numeric prefix followed by the content hash, cut to 36 characters.

    Same prefix and parts always give the same id. With no parts the hash
    of the empty string is used.
    """
    return f"{prefix}{content_hash(*parts)}"[:MAX_INSERT_ID_LENGTH]
