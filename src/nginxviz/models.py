from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

# ----------------------------
# Event schemas
# ----------------------------
class LogEntry(BaseModel):
    """One accepted access-log line, enriched with its country."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    ip: str
    method: str
    url: str
    status_code: int = 0
    size: int = 0
    user_agent: str = ""
    referer: str = ""
    country: str = ""        # ISO code
    country_full: str = ""   # English name


class LogUpdate(BaseModel):
    """Envelope written to viewers, one per entry."""

    model_config = ConfigDict(frozen=True)

    type: str = "log_entry"
    data: LogEntry


def encode_update(entry: LogEntry) -> str:
    return LogUpdate(data=entry).model_dump_json()


def decode_update(message: str | bytes) -> LogUpdate:
    return LogUpdate.model_validate_json(message)
