from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict

from nginxviz.geo import GeoEnricher, GeoLookupError
from nginxviz.models import LogEntry
from nginxviz.parser import ParseError, parse_line

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileIdentity:
    device: int
    inode: int

    @classmethod
    def of(cls, st: os.stat_result) -> "FileIdentity":
        return cls(device=st.st_dev, inode=st.st_ino)


@dataclass
class TailerStats:
    sessions: int = 0
    rotations: int = 0
    lines_read: int = 0
    entries_emitted: int = 0
    parse_errors: int = 0
    geo_misses: int = 0
    skipped_self: int = 0
    io_errors: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LogTailer:
    """
    Follows one access log path forever and puts enriched entries on `out`.

    Each tail session opens the file, reads it from the start and keeps
    reading as it grows. A side task polls the path's identity; when the
    file is replaced (or truncated) the session finishes reading the old
    handle and the next session starts on the new file. Only one session
    runs at a time.
    """

    def __init__(
        self,
        path: str,
        enricher: GeoEnricher,
        out: "asyncio.Queue[LogEntry]",
        *,
        parse: Callable[[str], LogEntry] = parse_line,
        wait_interval: float = 2.0,
        read_backoff: float = 0.5,
        rotation_poll: float = 10.0,
        self_marker: str = "nginxviz",
    ):
        self.path = path
        self.enricher = enricher
        self.out = out
        self.parse = parse
        self.wait_interval = wait_interval
        self.read_backoff = read_backoff
        self.rotation_poll = rotation_poll
        self.self_marker = self_marker
        self.stats = TailerStats()
        self.identity: FileIdentity | None = None
        self._offset = 0

    async def run(self) -> None:
        while True:
            await self._wait_for_file()
            try:
                await self._tail_session()
            except FileNotFoundError:
                # removed between the existence check and open
                continue
            except OSError as e:
                self.stats.io_errors += 1
                log.warning("Error reading log file %s: %s, retrying in %.1fs", self.path, e, self.wait_interval)
                await asyncio.sleep(self.wait_interval)

    async def _wait_for_file(self) -> None:
        announced = False
        while not os.path.exists(self.path):
            if not announced:
                log.info("Log file %s does not exist, waiting...", self.path)
                announced = True
            await asyncio.sleep(self.wait_interval)

    async def _tail_session(self) -> None:
        with open(self.path, "rb") as f:
            self.identity = FileIdentity.of(os.fstat(f.fileno()))
            f.seek(0)
            self._offset = 0
            self.stats.sessions += 1
            log.info("Starting to watch log file: %s (inode %d)", self.path, self.identity.inode)

            rotated = asyncio.Event()
            watcher = asyncio.create_task(self._watch_identity(self.identity, rotated))
            try:
                await self._read_until_rotated(f, rotated)
            finally:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher

        self.stats.rotations += 1
        log.info("Restarting log file watcher...")

    async def _read_until_rotated(self, f, rotated: asyncio.Event) -> None:
        pending = b""
        while True:
            chunk = await asyncio.to_thread(f.readline)
            if chunk:
                self._offset += len(chunk)
                if not chunk.endswith(b"\n"):
                    # writer is mid-line
                    pending += chunk
                    continue
                await self._handle_line((pending + chunk).decode("utf-8", errors="replace"))
                pending = b""
                continue

            if rotated.is_set():
                if pending:
                    await self._handle_line(pending.decode("utf-8", errors="replace"))
                return
            await asyncio.sleep(self.read_backoff)

    async def _watch_identity(self, identity: FileIdentity, rotated: asyncio.Event) -> None:
        while True:
            await asyncio.sleep(self.rotation_poll)
            try:
                st = os.stat(self.path)
            except OSError as e:
                log.warning("Error getting log file identity: %s", e)
                continue

            current = FileIdentity.of(st)
            if current != identity:
                log.info(
                    "Log file rotated (inode changed from %d to %d), restarting...",
                    identity.inode, current.inode,
                )
                rotated.set()
                return
            if st.st_size < self._offset:
                log.info("Log file truncated (%d < %d bytes), restarting...", st.st_size, self._offset)
                rotated.set()
                return

    async def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        self.stats.lines_read += 1

        try:
            entry = self.parse(line)
        except ParseError as e:
            self.stats.parse_errors += 1
            log.warning("Error parsing log line: %s", e.line)
            return

        if self.self_marker and self.self_marker in entry.url:
            self.stats.skipped_self += 1
            return

        try:
            entry = self.enricher.enrich(entry)
        except GeoLookupError as e:
            self.stats.geo_misses += 1
            log.warning("Dropping %s %s: %s", entry.method, entry.url, e)
            return

        await self.out.put(entry)
        self.stats.entries_emitted += 1
