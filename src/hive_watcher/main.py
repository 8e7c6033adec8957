"""Hive Watcher application entrypoint."""

import asyncio
import logging
from dataclasses import asdict

import uvicorn
from fastapi import FastAPI

from hive_watcher.adapters.base import ConnectionState
from hive_watcher.adapters.hive_poller import HivePollerAdapter
from hive_watcher.config import Settings, settings
from hive_watcher.pipeline import Pipeline
from hive_watcher.storage.streams import StreamPool
from hive_watcher.tracking.properties import SuperProperties
from hive_watcher.tracking.router import DeliveryRouter
from hive_watcher.tracking.sink import build_sink
from hive_watcher.utils.logging import configure_logging

logger = logging.getLogger("hive_watcher")

app = FastAPI(
    title="Hive Watcher",
    description="Podping notifications from the Hive blockchain",
    version=settings.version,
)


def build_pipeline(cfg: Settings) -> Pipeline:
    """Wire producer, stream pool, router and sink from configuration."""
    adapter = HivePollerAdapter({
        "endpoint": cfg.hive_api,
        "start": cfg.start_options(),
        "poll_interval": cfg.poll_interval,
        "batch_size": cfg.batch_size,
    })
    router = DeliveryRouter(
        sink=build_sink(cfg),
        super_props=SuperProperties(cfg.super_properties()),
        has_secret=cfg.has_secret,
    )
    return Pipeline(
        adapter=adapter,
        pool=StreamPool(cfg.data_folder),
        router=router,
        stream_idle_ttl=cfg.stream_idle_ttl,
        eviction_interval=cfg.eviction_interval,
        max_in_flight=cfg.max_in_flight,
    )


@app.on_event("startup")
async def startup():
    configure_logging(settings.log_level)
    logger.info("Hive Watcher v%s starting", settings.version)
    logger.info("Log level: %s", settings.log_level)
    logger.info("Hive API: %s", settings.hive_api)
    logger.info("Data folder: %s", settings.data_folder)

    pipeline = build_pipeline(settings)
    app.state.pipeline = pipeline
    app.state.pipeline_task = asyncio.create_task(pipeline.run(), name="pipeline")


@app.on_event("shutdown")
async def shutdown():
    pipeline: Pipeline | None = getattr(app.state, "pipeline", None)
    if pipeline is None:
        return
    await pipeline.stop()
    await app.state.pipeline_task


@app.get("/health")
async def health():
    pipeline: Pipeline | None = getattr(app.state, "pipeline", None)
    if pipeline is None:
        return {"status": "starting", "version": settings.version}
    if pipeline.stopping:
        status = "stopping"
    elif pipeline.adapter.state == ConnectionState.CONNECTED:
        status = "ok"
    else:
        status = "degraded"
    return {
        "status": status,
        "version": settings.version,
        "producer": asdict(pipeline.adapter.health()),
        "pipeline": pipeline.stats().to_dict(),
    }


def run():
    """Console entrypoint; SIGINT/SIGTERM stop the pipeline and exit 0."""
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )
