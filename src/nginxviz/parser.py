from __future__ import annotations

import re
from datetime import datetime, timezone

from nginxviz.models import LogEntry

# ----------------------------
# Combined access log
# ----------------------------
# 203.0.113.5 - - [17/Nov/2025:10:30:45 +0000] "GET /api/test HTTP/1.1" 200 1234 "http://example.com" "Mozilla/5.0"
COMBINED_RE = re.compile(
    r'^(?P<ip>\S+) \S+ \S+ \[(?P<ts>[^\]]+)\] '
    r'"(?P<method>\S+) (?P<url>[^"]*) [^"]*" '
    r'(?P<status>\d+) (?P<size>\d+) '
    r'"(?P<referer>[^"]*)" "(?P<ua>[^"]*)".*$'
)

TIMESTAMP_FORMAT = "%d/%b/%Y:%H:%M:%S %z"


class ParseError(ValueError):
    def __init__(self, line: str):
        super().__init__(f"failed to parse log line: {line}")
        self.line = line


def _parse_timestamp(raw: str) -> datetime:
    try:
        return datetime.strptime(raw, TIMESTAMP_FORMAT)
    except ValueError:
        return datetime.now(timezone.utc)


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        return 0


def parse_line(line: str) -> LogEntry:
    """
    Parse one combined-format line. Anything after the user agent is ignored.

    Raises ParseError when the line does not have the combined shape. A bad
    timestamp falls back to now; bad status/size fall back to 0. Country
    fields are left blank for the enricher.
    """
    line = line.strip()
    m = COMBINED_RE.match(line)
    if not m:
        raise ParseError(line)

    return LogEntry(
        timestamp=_parse_timestamp(m.group("ts")),
        ip=m.group("ip"),
        method=m.group("method"),
        url=m.group("url"),
        status_code=_to_int(m.group("status")),
        size=_to_int(m.group("size")),
        referer=m.group("referer"),
        user_agent=m.group("ua"),
    )
