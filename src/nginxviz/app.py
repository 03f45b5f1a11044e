from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request

from nginxviz import config
from nginxviz.geo import GeoEnricher
from nginxviz.hub import BroadcastHub
from nginxviz.models import LogEntry
from nginxviz.server import start_viewer_server
from nginxviz.tailer import LogTailer

log = logging.getLogger(__name__)


# ----------------------------
# Pipeline
# ----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    # GeoDatabaseError here aborts startup
    enricher = GeoEnricher.open(config.geo_db_path())

    entries: "asyncio.Queue[LogEntry]" = asyncio.Queue(maxsize=config.QUEUE_SIZE)
    hub = BroadcastHub(write_timeout=config.WRITE_TIMEOUT_S, outbox_size=config.OUTBOX_SIZE)
    tailer = LogTailer(
        config.LOG_FILE,
        enricher,
        entries,
        wait_interval=config.WAIT_S,
        read_backoff=config.READ_BACKOFF_S,
        rotation_poll=config.ROTATION_POLL_S,
        self_marker=config.SELF_MARKER,
    )

    server = await start_viewer_server(
        hub,
        config.HOST,
        config.WS_PORT,
        path=config.WS_PATH,
        ping_interval=config.PING_INTERVAL_S,
        pong_deadline=config.PONG_DEADLINE_S,
    )
    tasks: List[asyncio.Task] = [
        asyncio.create_task(hub.run_registry(), name="registry"),
        asyncio.create_task(hub.run_broadcast(entries), name="broadcast"),
        asyncio.create_task(tailer.run(), name="tailer"),
    ]
    for t in tasks:
        t.add_done_callback(report_task_exit)

    app.state.hub = hub
    app.state.tailer = tailer
    app.state.tasks = tasks
    try:
        yield
    finally:
        app.state.hub = None
        app.state.tailer = None
        app.state.tasks = []
        server.close()
        await server.wait_closed()
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        enricher.close()
        log.info("Pipeline stopped")


def report_task_exit(task: asyncio.Task) -> None:
    """Pipeline tasks run forever; log loudly if one stops."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("Pipeline task %s crashed", task.get_name(), exc_info=exc)
    else:
        log.error("Pipeline task %s exited", task.get_name())


app = FastAPI(title="nginxviz", lifespan=lifespan)


# ----------------------------
# Routes
# ----------------------------
@app.get("/health")
def health(request: Request):
    stopped = [t.get_name() for t in getattr(request.app.state, "tasks", []) if t.done()]
    if stopped:
        raise HTTPException(503, f"pipeline stopped: {', '.join(stopped)}")
    return {"ok": True}


@app.get("/stats")
def stats(request: Request) -> Dict[str, Any]:
    hub = getattr(request.app.state, "hub", None)
    tailer = getattr(request.app.state, "tailer", None)
    if hub is None or tailer is None:
        raise HTTPException(503, "pipeline not running")

    identity = tailer.identity
    return {
        "log_file": tailer.path,
        "inode": identity.inode if identity else None,
        "viewers": hub.viewer_count,
        "tailer": tailer.stats.as_dict(),
        "hub": {
            "broadcasts": hub.broadcasts,
            "delivery_failures": hub.delivery_failures,
            "slow_drops": hub.slow_drops,
        },
    }
