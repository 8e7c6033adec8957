"""Tests for the Hive block poller."""

import json

import httpx
import pytest

from hive_watcher.adapters.base import ConnectionState
from hive_watcher.adapters.hive_poller import (
    HivePollerAdapter,
    is_podping_id,
    parse_block,
    parse_block_time,
)


def _block(num, ops, timestamp="2021-05-13T20:42:51"):
    """A block_api style block with one transaction per operation."""
    return {
        "block_id": f"{num:08x}" + "cd" * 16,
        "timestamp": timestamp,
        "transaction_ids": [f"trx{num}-{i}" for i in range(len(ops))],
        "transactions": [{"operations": [op]} for op in ops],
    }


def _podping(payload, op_id="pp_podcast_update", auth="podping.aaa"):
    return {
        "type": "custom_json_operation",
        "value": {
            "required_auths": [],
            "required_posting_auths": [auth],
            "id": op_id,
            "json": json.dumps(payload),
        },
    }


class FakeNode:
    """JSON-RPC node with a fixed head and a fixed set of blocks."""

    def __init__(self, head, blocks, fail_ranges=0):
        self.head = head
        self.blocks = {int(b["block_id"][:8], 16): b for b in blocks}
        self.fail_ranges = fail_ranges
        self.calls: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        method = body["method"]
        if method == "condenser_api.get_dynamic_global_properties":
            result = {"head_block_number": self.head}
        elif method == "block_api.get_block_range":
            if self.fail_ranges:
                self.fail_ranges -= 1
                return httpx.Response(503)
            start = body["params"]["starting_block_num"]
            count = body["params"]["count"]
            result = {"blocks": [
                self.blocks[n] for n in range(start, start + count) if n in self.blocks
            ]}
        else:
            return httpx.Response(200, json={"id": body["id"], "error": {"code": -32601, "message": "no"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _adapter(node, start=None, **config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(node))
    return HivePollerAdapter(
        {"endpoint": "https://api.hive.blog", "start": start, "poll_interval": 0, **config},
        client=client,
    )


class TestParseBlock:
    """Verify podping extraction from raw blocks."""

    def test_extracts_podping(self):
        block = _block(53_000_000, [
            _podping({"version": "1.0", "medium": "podcast", "reason": "update",
                      "iris": ["https://a.example/feed", "https://b.example/feed"]}),
        ])
        [event] = parse_block(block)
        assert event.block_num == 53_000_000
        assert event.block_id == block["block_id"]
        assert event.posting_auth == "podping.aaa"
        assert event.reason == "update"
        assert event.medium == "podcast"
        assert event.urls == ["https://a.example/feed", "https://b.example/feed"]
        assert event.trx_id == "trx53000000-0"
        assert event.blocktime.isoformat() == "2021-05-13T20:42:51+00:00"

    def test_legacy_urls_and_numeric_version(self):
        block = _block(1, [_podping({"version": 0.3, "num_urls": 1,
                                     "reason": "feed_update", "urls": ["u"]}, op_id="podping")])
        [event] = parse_block(block)
        assert event.urls == ["u"]
        assert event.version == "0.3"

    def test_ignores_other_operations(self):
        block = _block(1, [
            {"type": "vote_operation", "value": {"voter": "x"}},
            _podping({"urls": ["u"]}, op_id="follow"),
            ["custom_json", {"required_posting_auths": ["p"], "id": "podping",
                             "json": json.dumps({"urls": ["v"]})}],
        ])
        events = parse_block(block)
        assert [e.urls for e in events] == [["v"]]

    def test_skips_malformed_json(self, caplog):
        bad = _podping({})
        bad["value"]["json"] = "{not json"
        block = _block(1, [bad, _podping({"urls": ["ok"]})])
        events = parse_block(block)
        assert [e.urls for e in events] == [["ok"]]
        assert "malformed" in caplog.text

    def test_skips_non_list_urls(self, caplog):
        block = _block(1, [
            _podping({"iris": 5}),
            {"type": "custom_json_operation", "value": "podping"},
            _podping({"iris": ["ok"]}),
        ])
        events = parse_block(block)
        assert [e.urls for e in events] == [["ok"]]
        assert "urls must be a list, got int" in caplog.text

    def test_single_url_string(self):
        block = _block(1, [_podping({"iris": "https://a.example/feed"})])
        [event] = parse_block(block)
        assert event.urls == ["https://a.example/feed"]


def test_is_podping_id():
    assert is_podping_id("podping")
    assert is_podping_id("pp_podcast_live")
    assert not is_podping_id("podping_other")
    assert not is_podping_id("ssc-mainnet-hive")


def test_parse_block_time():
    assert parse_block_time("2021-05-13T20:42:51").tzinfo is not None


class TestResolveStart:
    """Start block from explicit number or lookback."""

    def test_blocknum(self):
        adapter = _adapter(FakeNode(100, []), start={"blocknum": 42})
        assert adapter.resolve_start(1000) == 42

    def test_hours(self):
        adapter = _adapter(FakeNode(100, []), start={"hours": 1})
        assert adapter.resolve_start(10_000) == 10_000 - 1200

    def test_months(self):
        adapter = _adapter(FakeNode(100, []), start={"months": 1})
        assert adapter.resolve_start(2_000_000) == 2_000_000 - 864_000

    def test_default_minutes(self):
        adapter = _adapter(FakeNode(100, []))
        assert adapter.resolve_start(10_000) == 10_000 - 100

    def test_never_below_one(self):
        adapter = _adapter(FakeNode(100, []), start={"months": 6})
        assert adapter.resolve_start(10) == 1


class TestStream:
    """Verify connect, streaming and recovery."""

    @pytest.mark.asyncio
    async def test_connect_resolves_start(self):
        adapter = _adapter(FakeNode(5000, []), start={"minutes": 1})
        assert await adapter.connect() == ConnectionState.CONNECTED
        assert adapter.next_block == 5000 - 20

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        def down(request):
            raise httpx.ConnectError("down", request=request)

        adapter = _adapter(down)
        assert await adapter.connect() == ConnectionState.FAILED
        assert adapter.health().errors == 1

    @pytest.mark.asyncio
    async def test_streams_blocks_in_order(self):
        node = FakeNode(101, [
            _block(99, [_podping({"urls": ["a"]})]),
            _block(100, []),
            _block(101, [_podping({"urls": ["b"]}), _podping({"urls": ["c"]})]),
        ])
        adapter = _adapter(node, start={"blocknum": 99})
        await adapter.connect()

        seen = []
        async for event in adapter.stream():
            seen.append((event.block_num, event.urls))
            if len(seen) == 3:
                break
        await adapter.disconnect()

        assert seen == [(99, ["a"]), (101, ["b"]), (101, ["c"])]
        assert adapter.health().events_delivered == 3
        assert adapter.health().last_block_num == 101
        assert adapter.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_recovers_after_rpc_error(self):
        node = FakeNode(10, [_block(10, [_podping({"urls": ["a"]})])], fail_ranges=1)
        adapter = _adapter(node, start={"blocknum": 10})
        await adapter.connect()

        async for event in adapter.stream():
            assert event.urls == ["a"]
            break
        await adapter.disconnect()

        assert adapter.health().errors == 1
        assert adapter.next_block == 10

    @pytest.mark.asyncio
    async def test_stream_requires_connect(self):
        adapter = _adapter(FakeNode(1, []))
        assert [e async for e in adapter.stream()] == []
