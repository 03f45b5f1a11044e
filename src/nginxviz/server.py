from __future__ import annotations

import logging
from http import HTTPStatus

from websockets.asyncio.server import Server, ServerConnection, serve

from nginxviz.hub import BroadcastHub
from nginxviz.session import ConnectionSession

log = logging.getLogger(__name__)


async def start_viewer_server(
    hub: BroadcastHub,
    host: str,
    port: int,
    *,
    path: str = "/ws",
    ping_interval: float = 30.0,
    pong_deadline: float = 60.0,
) -> Server:
    """
    Start the viewer WebSocket server. Any client may connect on `path`;
    other paths get a 404. The library's own keepalive is off because each
    ConnectionSession pings its peer itself.
    """

    def check_path(connection: ServerConnection, request):
        if request.path.split("?", 1)[0] != path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def handler(connection: ServerConnection) -> None:
        session = ConnectionSession(
            connection,
            hub,
            ping_interval=ping_interval,
            pong_deadline=pong_deadline,
        )
        await session.run()

    server = await serve(
        handler,
        host,
        port,
        process_request=check_path,
        ping_interval=None,
        ping_timeout=None,
    )
    log.info("Viewer stream on ws://%s:%d%s", host, port, path)
    return server
