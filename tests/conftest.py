"""Shared fakes and fixtures."""

import asyncio
import contextlib
from datetime import datetime, timezone
from types import SimpleNamespace

import geoip2.errors
import pytest
import pytest_asyncio
from mmdb_writer import MMDBWriter
from netaddr import IPSet
from websockets.exceptions import ConnectionClosedOK

from nginxviz.geo import GeoEnricher
from nginxviz.hub import BroadcastHub
from nginxviz.models import LogEntry


COUNTRIES = {
    "203.0.113.5": ("AU", "Australia"),
    "198.51.100.7": ("DE", "Germany"),
    "2001:db8::1": ("FR", "France"),
    "192.0.2.9": (None, None),  # continent-only record
}


class FakeReader:
    """Stands in for geoip2.database.Reader."""

    def __init__(self, table=None):
        self.table = COUNTRIES if table is None else table
        self.closed = False

    def country(self, ip):
        if ip not in self.table:
            raise geoip2.errors.AddressNotFoundError(f"The address {ip} is not in the database.")
        iso, name = self.table[ip]
        names = {"en": name} if name else {}
        return SimpleNamespace(country=SimpleNamespace(iso_code=iso, names=names))

    def close(self):
        self.closed = True


class FakeWebSocket:
    """Just enough of a websockets ServerConnection for hub and session tests."""

    def __init__(self, name="viewer", *, fail_send=False, send_delay=0.0, answer_pings=True):
        self.remote_address = ("127.0.0.1", abs(hash(name)) % 60000)
        self.fail_send = fail_send
        self.send_delay = send_delay
        self.answer_pings = answer_pings
        self.sent = []
        self.send_attempts = 0
        self.pings = 0
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, message):
        self.send_attempts += 1
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_send or self.closed:
            raise ConnectionError("broken pipe")
        self.sent.append(message)

    async def recv(self):
        item = await self._inbox.get()
        if item is None:
            raise ConnectionClosedOK(None, None)
        return item

    async def ping(self):
        self.pings += 1
        fut = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            fut.set_result(0.001)
        return fut

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)

    def peer_sends(self, message):
        self._inbox.put_nowait(message)

    def peer_closes(self):
        self._inbox.put_nowait(None)


def make_line(ip="203.0.113.5", url="/api/test", status="200", size="1234",
              ts="17/Nov/2025:10:30:45 +0000", method="GET",
              referer="http://example.com", ua="Mozilla/5.0"):
    return f'{ip} - - [{ts}] "{method} {url} HTTP/1.1" {status} {size} "{referer}" "{ua}"'


def make_entry(**overrides):
    fields = dict(
        timestamp=datetime(2025, 11, 17, 10, 30, 45, tzinfo=timezone.utc),
        ip="203.0.113.5",
        method="GET",
        url="/api/test",
        status_code=200,
        size=1234,
        user_agent="Mozilla/5.0",
        referer="http://example.com",
        country="AU",
        country_full="Australia",
    )
    fields.update(overrides)
    return LogEntry(**fields)


@pytest.fixture
def enricher():
    return GeoEnricher(FakeReader())


@pytest_asyncio.fixture
async def hub():
    """A hub with its registry processor running."""
    h = BroadcastHub(write_timeout=0.5)
    task = asyncio.create_task(h.run_registry())
    yield h
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def wait_for(predicate, timeout=2.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def write_mmdb(path, database_type):
    """Write a small real .mmdb with one AU network, 203.0.113.0/24."""
    writer = MMDBWriter(ip_version=4, database_type=database_type, languages=["en"], description="test db")
    writer.insert_network(
        IPSet(["203.0.113.0/24"]),
        {"country": {"iso_code": "AU", "names": {"en": "Australia"}}},
    )
    writer.to_db_file(str(path))
    return str(path)
