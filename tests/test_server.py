"""End-to-end tests for the viewer WebSocket server."""

import asyncio

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import InvalidHandshake

from nginxviz.models import decode_update
from nginxviz.server import start_viewer_server

from conftest import make_entry, wait_for


async def _start(hub, **kwargs):
    server = await start_viewer_server(hub, "127.0.0.1", 0, **kwargs)
    port = server.sockets[0].getsockname()[1]
    return server, port


class TestViewerServer:
    @pytest.mark.asyncio
    async def test_viewer_receives_log_entries(self, hub):
        server, port = await _start(hub)
        try:
            async with connect(f"ws://127.0.0.1:{port}/ws") as ws:
                await wait_for(lambda: hub.viewer_count == 1)
                entry = make_entry()
                assert await hub.broadcast(entry) == 1

                update = decode_update(await asyncio.wait_for(ws.recv(), 1))
                assert update.type == "log_entry"
                assert update.data == entry
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_disconnect_unregisters(self, hub):
        server, port = await _start(hub)
        try:
            async with connect(f"ws://127.0.0.1:{port}/ws"):
                await wait_for(lambda: hub.viewer_count == 1)
            await wait_for(lambda: hub.viewer_count == 0)
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_many_viewers(self, hub):
        server, port = await _start(hub)
        try:
            clients = [await connect(f"ws://127.0.0.1:{port}/ws") for _ in range(3)]
            await wait_for(lambda: hub.viewer_count == 3)
            await hub.broadcast(make_entry(url="/fan"))
            for ws in clients:
                update = decode_update(await asyncio.wait_for(ws.recv(), 1))
                assert update.data.url == "/fan"
            for ws in clients:
                await ws.close()
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_server_pings_viewers(self, hub):
        server, port = await _start(hub, ping_interval=0.05, pong_deadline=1)
        try:
            # the client answers pings on its own while it reads
            async with connect(f"ws://127.0.0.1:{port}/ws", ping_interval=None) as ws:
                await wait_for(lambda: hub.viewer_count == 1)
                with pytest.raises(asyncio.TimeoutError):
                    await asyncio.wait_for(ws.recv(), 0.3)
                assert hub.viewer_count == 1
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_other_paths_are_rejected(self, hub):
        server, port = await _start(hub)
        try:
            with pytest.raises(InvalidHandshake):
                async with connect(f"ws://127.0.0.1:{port}/elsewhere"):
                    pass
            assert hub.viewer_count == 0
        finally:
            server.close()
            await server.wait_closed()
