"""Verify application wiring and the health endpoint."""

from fastapi.testclient import TestClient

from hive_watcher.adapters.base import ConnectionState
from hive_watcher.adapters.hive_poller import HivePollerAdapter
from hive_watcher.config import Settings
from hive_watcher.main import app, build_pipeline
from hive_watcher.tracking.sink import NullSink


def test_build_pipeline(monkeypatch, tmp_path):
    monkeypatch.setenv("HIVE_WATCHER_DATA_FOLDER", str(tmp_path))
    monkeypatch.setenv("HIVE_WATCHER_TRACKING_ENABLED", "false")
    monkeypatch.setenv("HIVE_WATCHER_STREAM_IDLE_TTL", "30")
    pipeline = build_pipeline(Settings())
    assert isinstance(pipeline.adapter, HivePollerAdapter)
    assert isinstance(pipeline.router.sink, NullSink)
    assert pipeline.pool.data_folder == str(tmp_path)
    assert pipeline.stream_idle_ttl == 30


def test_health_before_startup():
    # No context manager: startup (and with it the pipeline) never runs
    client = TestClient(app)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "starting"


def test_health_reports_pipeline(monkeypatch, tmp_path):
    monkeypatch.setenv("HIVE_WATCHER_DATA_FOLDER", str(tmp_path))
    app.state.pipeline = build_pipeline(Settings())
    try:
        body = TestClient(app).get("/health").json()
    finally:
        del app.state.pipeline
    assert body["status"] == "degraded"
    assert body["producer"]["state"] == "disconnected"
    assert body["producer"]["adapter_type"] == "hive_poller"
    assert body["pipeline"]["events_received"] == 0
    assert body["pipeline"]["process_failures"] == 0


def test_health_ok_once_producer_connected(monkeypatch, tmp_path):
    monkeypatch.setenv("HIVE_WATCHER_DATA_FOLDER", str(tmp_path))
    pipeline = build_pipeline(Settings())
    pipeline.adapter._state = ConnectionState.CONNECTED
    app.state.pipeline = pipeline
    try:
        body = TestClient(app).get("/health").json()
    finally:
        del app.state.pipeline
    assert body["status"] == "ok"
    assert body["producer"]["state"] == "connected"
