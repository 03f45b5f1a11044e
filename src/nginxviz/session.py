from __future__ import annotations

import asyncio
import enum
import logging

from websockets.exceptions import ConnectionClosed

from nginxviz.hub import BroadcastHub, ClientConnection

log = logging.getLogger(__name__)


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    REGISTERED = "registered"
    ACTIVE = "active"
    PING_PENDING = "ping_pending"
    CLOSING = "closing"
    CLOSED = "closed"


class ConnectionSession:
    """
    Lifecycle of one viewer, from a completed handshake until the socket is gone.

    Two subtasks run side by side: a reader that drains (and discards)
    inbound frames, and a keepalive loop that pings every `ping_interval`
    and gives up when no pong has come back within `pong_deadline` of the
    last one. Whichever ends first ends the session.
    """

    def __init__(
        self,
        ws,
        hub: BroadcastHub,
        *,
        ping_interval: float = 30.0,
        pong_deadline: float = 60.0,
    ):
        self.ws = ws
        self.hub = hub
        self.ping_interval = ping_interval
        self.pong_deadline = pong_deadline
        self.peer = _peer_name(ws)
        self.conn = ClientConnection(ws, peer=self.peer)
        self.state = SessionState.CONNECTING
        self._last_ack = 0.0

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self.hub.register(self.conn)
        self.state = SessionState.REGISTERED
        log.info("New WebSocket client connected: %s", self.peer)

        self._last_ack = loop.time()
        self.state = SessionState.ACTIVE
        reader = asyncio.create_task(self._read_loop())
        keepalive = asyncio.create_task(self._keepalive_loop())
        try:
            await asyncio.wait({reader, keepalive}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, keepalive):
                task.cancel()
            await asyncio.gather(reader, keepalive, return_exceptions=True)
            await self._close()

    async def _read_loop(self) -> None:
        try:
            while True:
                await self.ws.recv()
                # viewers have nothing to say, any frame just proves they're alive
                self._last_ack = asyncio.get_running_loop().time()
        except ConnectionClosed as e:
            log.info("WebSocket client %s closed: %s", self.peer, e)
        except Exception as e:
            log.warning("WebSocket read error from %s: %r", self.peer, e)

    async def _keepalive_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                pong = await self.ws.ping()
            except Exception as e:
                log.warning("WebSocket ping error for %s: %r", self.peer, e)
                return

            self.state = SessionState.PING_PENDING
            remaining = self.pong_deadline - (loop.time() - self._last_ack)
            try:
                await asyncio.wait_for(pong, timeout=max(remaining, 0.0))
            except asyncio.TimeoutError:
                log.warning("WebSocket client %s missed its pong deadline", self.peer)
                return
            except Exception as e:
                log.warning("WebSocket ping error for %s: %r", self.peer, e)
                return
            self._last_ack = loop.time()
            self.state = SessionState.ACTIVE

    async def _close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSING
        # closed before unregister: nothing is written after it
        self.conn.close_soon()
        self.hub.unregister(self.conn)
        await self.conn.close()
        self.state = SessionState.CLOSED
        log.info("WebSocket client disconnected: %s", self.peer)


def _peer_name(ws) -> str:
    addr = getattr(ws, "remote_address", None)
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr) if addr else "?"
