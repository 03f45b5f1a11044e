from __future__ import annotations

import logging
import os

from importlib.resources import files

# ----------------------------
# Config
# ----------------------------
LOG_FILE = os.getenv("NGINXVIZ_LOG_FILE", "mylog.log")
GEO_DB = os.getenv("NGINXVIZ_GEO_DB", "").strip()

HOST = os.getenv("NGINXVIZ_HOST", "127.0.0.1")
PORT = int(os.getenv("NGINXVIZ_PORT", "9001"))        # status API (uvicorn)
WS_PORT = int(os.getenv("NGINXVIZ_WS_PORT", "9002"))  # viewer stream
WS_PATH = os.getenv("NGINXVIZ_WS_PATH", "/ws")

# Requests for our own assets show up in the log we tail.
SELF_MARKER = os.getenv("NGINXVIZ_SELF_MARKER", "nginxviz")

WAIT_S = float(os.getenv("NGINXVIZ_WAIT_S", "2"))
READ_BACKOFF_S = float(os.getenv("NGINXVIZ_READ_BACKOFF_S", "0.5"))
ROTATION_POLL_S = float(os.getenv("NGINXVIZ_ROTATION_POLL_S", "10"))

PING_INTERVAL_S = float(os.getenv("NGINXVIZ_PING_INTERVAL_S", "30"))
PONG_DEADLINE_S = float(os.getenv("NGINXVIZ_PONG_DEADLINE_S", "60"))
WRITE_TIMEOUT_S = float(os.getenv("NGINXVIZ_WRITE_TIMEOUT_S", "5"))

QUEUE_SIZE = int(os.getenv("NGINXVIZ_QUEUE_SIZE", "1000"))
OUTBOX_SIZE = int(os.getenv("NGINXVIZ_OUTBOX_SIZE", "64"))

LOG_LEVEL = os.getenv("NGINXVIZ_LOG_LEVEL", "info")
RELOAD = os.getenv("NGINXVIZ_RELOAD", "0") == "1"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

DEFAULT_GEO_DB_NAME = "dbip-country-lite.mmdb"


def geo_db_path() -> str:
    if GEO_DB:
        return GEO_DB
    return str(files("nginxviz").joinpath("data").joinpath(DEFAULT_GEO_DB_NAME))


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
