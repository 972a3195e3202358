"""Pytest configuration and fixtures"""

import os
import shutil
import tempfile
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from filerelay.api.rest import create_app
from filerelay.config import Config
from filerelay.node import TransferNode
from filerelay.transfer.ingest import ChunkIngestEngine
from filerelay.transfer.state import StatusRegistry


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return StatusRegistry(clock=clock)


@pytest.fixture
def engine(registry, temp_dir):
    return ChunkIngestEngine(
        registry,
        received_dir=temp_dir / "received",
        temp_dir=temp_dir / "tmp" / "uploads",
    )


@pytest.fixture
def make_file(temp_dir):
    """Write a file of random bytes and return (path, data)"""
    def _make(name: str = "payload.bin", size: int = 100_000, data: bytes = None):
        source_dir = temp_dir / "source"
        source_dir.mkdir(parents=True, exist_ok=True)
        data = os.urandom(size) if data is None else data
        path = source_dir / name
        path.write_bytes(data)
        return path, data
    return _make


@pytest.fixture
def config(temp_dir):
    return Config(data_dir=temp_dir / "node", retry_delay=0.0)


@pytest_asyncio.fixture
async def node(config):
    node = TransferNode(config)
    await node.start()
    yield node
    await node.stop()


@pytest.fixture
def app(node):
    return create_app(node)


@pytest.fixture
def transport(app):
    return httpx.ASGITransport(app=app)


@pytest_asyncio.fixture
async def api_client(transport):
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def feed(data: bytes, piece: int = 1000):
    """Async byte source yielding data in fixed pieces"""
    for i in range(0, len(data), piece):
        yield data[i:i + piece]
