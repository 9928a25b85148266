"""
Pytest configuration and shared fixtures for resmqtt.

Provides an in-memory transport, a manually driven clock and a polling
helper so the engine can be exercised without a real broker.
"""

import asyncio
import logging
import sys
from typing import Callable, List

import pytest

from resmqtt.core.constants import LOGGER_NAME
from resmqtt.core.exceptions import TransportError, error_message
from resmqtt.packet import ControlPacket, PacketReader, encode
from resmqtt.transport.base import Transport


class FakeClock:
    """Monotonic clock that only moves when the test advances it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(Transport):
    """In-memory transport. Inbound bytes are queued by the test."""

    def __init__(self, fail_open: bool = False) -> None:
        self.fail_open = fail_open
        self.fail_write = False
        self.inbound: "asyncio.Queue[bytes]" = asyncio.Queue()
        self.written: List[bytes] = []
        self.opened = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    async def open(self) -> None:
        if self.fail_open:
            raise TransportError(
                error_message("CONNECTION_FAILED", reason="refused by test")
            )
        self.opened = True

    async def read(self, max_bytes: int = 4096) -> bytes:
        if self.closed:
            return b""
        return await self.inbound.get()

    async def write(self, data: bytes) -> int:
        if not self.is_open:
            raise TransportError(error_message("NOT_CONNECTED"))
        if self.fail_write:
            raise TransportError(
                error_message("WRITE_FAILED", reason="refused by test")
            )
        self.written.append(bytes(data))
        return len(data)

    async def close(self) -> None:
        self.closed = True
        self.inbound.put_nowait(b"")

    def feed(self, *packets: ControlPacket) -> None:
        """Queue packets as if the broker had sent them."""
        self.inbound.put_nowait(b"".join(encode(packet) for packet in packets))

    def feed_bytes(self, data: bytes) -> None:
        self.inbound.put_nowait(data)

    def drop(self) -> None:
        """Simulate the broker closing the connection."""
        self.inbound.put_nowait(b"")

    def sent(self) -> List[ControlPacket]:
        """Decode everything the client has written so far."""
        return PacketReader().feed(b"".join(self.written))

    def sent_of(self, packet_class: type) -> List[ControlPacket]:
        return [p for p in self.sent() if isinstance(p, packet_class)]


class TransportPool:
    """Transport factory that hands out a fresh FakeTransport per connect."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.transports: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(fail_open=self.failures > 0)
        if self.failures > 0:
            self.failures -= 1
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


async def until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """Send library logs to stdout so they show up on failures."""
    formatter = logging.Formatter(
        fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d "
    )
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pool():
    return TransportPool()
