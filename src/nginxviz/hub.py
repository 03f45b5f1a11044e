from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from nginxviz.models import LogEntry, encode_update

log = logging.getLogger(__name__)


class ClientConnection:
    """
    Write side of one viewer's WebSocket.

    Owned by its session; the hub only keeps a reference. Once `closed` is
    set nothing is written to it again.
    """

    def __init__(self, ws, peer: str = "?"):
        self._ws = ws
        self.peer = peer
        self.closed = False
        self._closing: Optional[asyncio.Task] = None

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError(f"connection to {self.peer} is closed")
        await self._ws.send(message)

    def close_soon(self) -> None:
        """Mark closed now and run the close handshake in the background."""
        if self._closing is None:
            self.closed = True
            self._closing = asyncio.ensure_future(self._close_transport())

    async def close(self) -> None:
        self.close_soon()
        await self._closing

    async def _close_transport(self) -> None:
        try:
            await self._ws.close()
        except Exception as e:
            log.debug("Error closing connection to %s: %s", self.peer, e)

    def __repr__(self) -> str:
        return f"ClientConnection({self.peer})"


class Action(enum.Enum):
    REGISTER = "register"
    UNREGISTER = "unregister"


@dataclass(frozen=True)
class RegistrationCommand:
    action: Action
    conn: ClientConnection


class BroadcastHub:
    """
    Viewer registry plus fan-out.

    Register/unregister requests go through a command queue drained by
    `run_registry`, which is the only code that changes the viewer set. After
    each change it publishes a frozenset snapshot; `broadcast` only ever reads
    that snapshot, so slow writes never hold up registrations.

    Every registered viewer gets a small outbox and its own writer task, so
    `broadcast` never waits on a socket. A viewer whose outbox is full, or
    whose write fails or outlives `write_timeout`, is closed and unregistered.
    """

    def __init__(self, write_timeout: float = 5.0, outbox_size: int = 64):
        self.write_timeout = write_timeout
        self.outbox_size = outbox_size
        self._commands: "asyncio.Queue[RegistrationCommand]" = asyncio.Queue()
        self._viewers: set = set()
        self._snapshot: FrozenSet[ClientConnection] = frozenset()
        self._outboxes: Dict[ClientConnection, "asyncio.Queue[str]"] = {}
        self._writers: Dict[ClientConnection, asyncio.Task] = {}
        self.broadcasts = 0
        self.delivery_failures = 0
        self.slow_drops = 0

    # ----------------------------
    # Registry
    # ----------------------------
    def register(self, conn: ClientConnection) -> None:
        self._commands.put_nowait(RegistrationCommand(Action.REGISTER, conn))

    def unregister(self, conn: ClientConnection) -> None:
        self._commands.put_nowait(RegistrationCommand(Action.UNREGISTER, conn))

    @property
    def snapshot(self) -> FrozenSet[ClientConnection]:
        return self._snapshot

    @property
    def viewer_count(self) -> int:
        return len(self._snapshot)

    async def run_registry(self) -> None:
        try:
            while True:
                cmd = await self._commands.get()
                try:
                    self._apply(cmd)
                finally:
                    self._commands.task_done()
        finally:
            for task in list(self._writers.values()):
                task.cancel()

    def _apply(self, cmd: RegistrationCommand) -> None:
        conn = cmd.conn
        if cmd.action is Action.REGISTER:
            if conn not in self._viewers:
                self._viewers.add(conn)
                self._outboxes[conn] = asyncio.Queue(maxsize=self.outbox_size)
                self._writers[conn] = asyncio.create_task(self._write_loop(conn, self._outboxes[conn]))
                log.info("Client registered, total clients: %d", len(self._viewers))
        elif conn in self._viewers:
            self._viewers.discard(conn)
            self._outboxes.pop(conn, None)
            writer = self._writers.pop(conn, None)
            if writer is not None:
                writer.cancel()
            log.info("Client unregistered, total clients: %d", len(self._viewers))
        self._snapshot = frozenset(self._viewers)

    async def wait_idle(self) -> None:
        """Wait until every submitted command has been applied."""
        await self._commands.join()

    # ----------------------------
    # Fan-out
    # ----------------------------
    async def run_broadcast(self, entries: "asyncio.Queue[LogEntry]") -> None:
        while True:
            entry = await entries.get()
            try:
                await self.broadcast(entry)
            finally:
                entries.task_done()

    async def broadcast(self, entry: LogEntry) -> int:
        """Queue one entry for every registered viewer. Returns the number of attempts."""
        log.debug("Broadcasting log entry: %s %s %s %d", entry.ip, entry.method, entry.url, entry.status_code)
        message = encode_update(entry)
        self.broadcasts += 1

        attempts = 0
        for conn in self._snapshot:
            outbox = self._outboxes.get(conn)
            if conn.closed or outbox is None:
                continue
            attempts += 1
            try:
                outbox.put_nowait(message)
            except asyncio.QueueFull:
                self.slow_drops += 1
                log.warning("WebSocket client %s is too slow, dropping it", conn.peer)
                self._drop(conn)
        return attempts

    async def wait_delivered(self) -> None:
        """Wait until every queued message has been written or abandoned."""
        await asyncio.gather(*(q.join() for q in list(self._outboxes.values())))

    async def _write_loop(self, conn: ClientConnection, outbox: "asyncio.Queue[str]") -> None:
        try:
            while True:
                message = await outbox.get()
                try:
                    await asyncio.wait_for(conn.send(message), timeout=self.write_timeout)
                except Exception as e:
                    self.delivery_failures += 1
                    log.warning("Error writing to WebSocket client %s: %r", conn.peer, e)
                    self._drop(conn)
                    return
                finally:
                    outbox.task_done()
        finally:
            _abandon(outbox)

    def _drop(self, conn: ClientConnection) -> None:
        conn.close_soon()
        self.unregister(conn)


def _abandon(outbox: "asyncio.Queue[str]") -> None:
    while not outbox.empty():
        outbox.get_nowait()
        outbox.task_done()
