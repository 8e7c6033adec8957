"""Hive block poller adapter.

Polls a Hive API node over JSON-RPC, walks every block from the start
position onwards and extracts podping custom_json operations. Each
operation becomes one RawEvent; nothing else is transformed.

The start position is either an explicit block number or a lookback
from the current head block (months, hours or minutes, at one block
every three seconds). On RPC errors the adapter reports itself degraded,
backs off and resumes at the first block it has not finished yet.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx

from hive_watcher.adapters.base import BaseAdapter, ConnectionState
from hive_watcher.errors import HiveWatcherError
from hive_watcher.models.events import RawEvent

logger = logging.getLogger("hive_watcher.adapters.hive_poller")

BLOCK_INTERVAL_SECONDS = 3
SECONDS_PER_UNIT = {
    "months": 30 * 86400,
    "hours": 3600,
    "minutes": 60,
}
CUSTOM_JSON_TYPES = ("custom_json_operation", "custom_json")
PODPING_ID = "podping"
PODPING_ID_PREFIX = "pp_"


class RPCError(HiveWatcherError):
    """The Hive node answered with a JSON-RPC error."""


def is_podping_id(op_id: str) -> bool:
    return op_id == PODPING_ID or op_id.startswith(PODPING_ID_PREFIX)


def parse_block_time(value: str) -> datetime:
    """Hive timestamps are UTC without an offset."""
    parsed = datetime.fromisoformat(value.rstrip("Z"))
    return parsed.replace(tzinfo=timezone.utc)


def _unpack_op(op: Any) -> tuple[str, dict[str, Any]]:
    # block_api gives {"type": ..., "value": ...}, condenser_api [type, value]
    if isinstance(op, dict):
        return op.get("type", ""), op.get("value") or {}
    if isinstance(op, (list, tuple)) and len(op) == 2:
        return op[0], op[1] or {}
    return "", {}


def _urls(payload: dict[str, Any]) -> list[str]:
    urls = payload.get("iris") or payload.get("urls") or payload.get("url")
    if not urls:
        return []
    if isinstance(urls, str):
        return [urls]
    if not isinstance(urls, (list, tuple)):
        raise ValueError(f"urls must be a list, got {type(urls).__name__}")
    return [str(u) for u in urls]


def parse_block(block: dict[str, Any]) -> list[RawEvent]:
    """Extract every podping operation of a block, in block order."""
    block_id = block["block_id"]
    block_num = int(block_id[:8], 16)
    blocktime = parse_block_time(block["timestamp"])
    trx_ids = block.get("transaction_ids") or []

    events: list[RawEvent] = []
    for i, trx in enumerate(block.get("transactions") or []):
        trx_id = trx_ids[i] if i < len(trx_ids) else trx.get("transaction_id")
        for op in trx.get("operations") or []:
            op_type, value = _unpack_op(op)
            if op_type not in CUSTOM_JSON_TYPES or not isinstance(value, dict):
                continue
            op_id = str(value.get("id") or "")
            if not is_podping_id(op_id):
                continue
            try:
                payload = json.loads(value.get("json") or "{}")
                if not isinstance(payload, dict):
                    raise ValueError("payload is not an object")
                auths = (
                    value.get("required_posting_auths")
                    or value.get("required_auths")
                    or [""]
                )
                version = payload.get("version")
                events.append(RawEvent(
                    block_id=block_id,
                    block_num=block_num,
                    blocktime=blocktime,
                    posting_auth=auths[0],
                    reason=payload.get("reason"),
                    trx_id=trx_id,
                    op_id=op_id,
                    medium=payload.get("medium"),
                    version=None if version is None else str(version),
                    urls=_urls(payload),
                ))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(
                    "Skipping malformed podping in block %d trx %s: %s",
                    block_num, trx_id, e,
                )
    return events


class HivePollerAdapter(BaseAdapter):
    """Producer for podping operations on the Hive chain.

    Required config keys:
        endpoint: str       - Hive API node URL (e.g. https://api.hive.blog)

    Optional config keys:
        start: dict         - One of {blocknum|months|hours|minutes: int}
                              (default: {'minutes': 5})
        poll_interval: int  - Seconds to wait at the head block (default: 3)
        batch_size: int     - Blocks per get_block_range call (default: 50)
        timeout: float      - HTTP timeout in seconds (default: 30)
    """

    def __init__(
        self,
        config: dict[str, Any],
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(config)
        self._endpoint = config["endpoint"]
        self._start = config.get("start") or {"minutes": 5}
        self._poll_interval = float(config.get("poll_interval", 3))
        self._batch_size = int(config.get("batch_size", 50))
        self._timeout = float(config.get("timeout", 30))
        self._client = client
        self._owns_client = client is None
        self._next_block: int | None = None
        self._rpc_id = 0

    @property
    def adapter_type(self) -> str:
        return "hive_poller"

    @property
    def next_block(self) -> int | None:
        """First block that has not been fully streamed yet."""
        return self._next_block

    async def _call(self, method: str, params: Any) -> Any:
        self._rpc_id += 1
        resp = await self._client.post(
            self._endpoint,
            json={
                "jsonrpc": "2.0",
                "id": self._rpc_id,
                "method": method,
                "params": params,
            },
        )
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            err = data["error"]
            raise RPCError(f"{method}: {err.get('code')} {err.get('message')}")
        return data["result"]

    async def head_block(self) -> int:
        props = await self._call("condenser_api.get_dynamic_global_properties", [])
        return int(props["head_block_number"])

    async def get_blocks(self, start: int, count: int) -> list[dict[str, Any]]:
        result = await self._call(
            "block_api.get_block_range",
            {"starting_block_num": start, "count": count},
        )
        return result.get("blocks") or []

    def resolve_start(self, head: int) -> int:
        """Block number the stream starts at, given the head block."""
        if self._start.get("blocknum"):
            return int(self._start["blocknum"])
        for unit, seconds in SECONDS_PER_UNIT.items():
            amount = self._start.get(unit)
            if amount:
                lookback = amount * seconds // BLOCK_INTERVAL_SECONDS
                return max(1, head - lookback)
        return max(1, head - 5 * 60 // BLOCK_INTERVAL_SECONDS)

    async def connect(self) -> ConnectionState:
        """Connect to the node and resolve the start block."""
        self._state = ConnectionState.CONNECTING
        try:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self._timeout)
                )
            head = await self.head_block()
            if self._next_block is None:
                self._next_block = self.resolve_start(head)
            self._state = ConnectionState.CONNECTED
            logger.info(
                "Hive poller connected to %s: head block %d, starting at %d (%s)",
                self._endpoint, head, self._next_block, self._start,
            )
        except Exception as e:
            self._state = ConnectionState.FAILED
            self._record_error(f"Connection failed: {e}")

        return self._state

    async def stream(self) -> AsyncIterator[RawEvent]:
        """Walk blocks from the start position and yield podpings."""
        if self._client is None or self._state != ConnectionState.CONNECTED:
            logger.error("Cannot stream: adapter not connected")
            return

        logger.info("Streaming started at block %d", self._next_block)

        while self._state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED):
            try:
                head = await self.head_block()
                if self._next_block > head:
                    await asyncio.sleep(self._poll_interval)
                    continue

                count = min(self._batch_size, head - self._next_block + 1)
                blocks = await self.get_blocks(self._next_block, count)
                if not blocks:
                    await asyncio.sleep(self._poll_interval)
                    continue

                for block in blocks:
                    for event in parse_block(block):
                        self._record_event(event)
                        yield event
                    self._next_block = int(block["block_id"][:8], 16) + 1

                if self._state == ConnectionState.DEGRADED:
                    self._state = ConnectionState.CONNECTED

            except (httpx.HTTPError, RPCError, KeyError, ValueError, TypeError) as e:
                if self._state == ConnectionState.DISCONNECTED:
                    return
                self._record_error(f"Stream error at block {self._next_block}: {e}")
                self._state = ConnectionState.DEGRADED
                await asyncio.sleep(self._poll_interval * 2)

    async def disconnect(self) -> None:
        """Stop streaming and close the HTTP client."""
        self._state = ConnectionState.DISCONNECTED
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Hive poller disconnected at block %s", self._next_block)
