"""Unit tests for range serving"""

import pytest

from filerelay.errors import InvalidRequestError
from filerelay.transfer.serving import RangeServingEngine, ServePlan, parse_range
from filerelay.transfer.state import TransferPhase


@pytest.mark.parametrize("header,expected", [
    (None, 0),
    ("", 0),
    ("bytes=0-", 0),
    ("bytes=400-", 400),
    (" bytes=400- ", 400),
    ("bytes=5000-", 1000),
    ("bytes=100-200", 0),
    ("bytes=-100", 0),
    ("bytes=0-10,20-", 0),
    ("items=10-", 0),
    ("garbage", 0),
])
def test_parse_range(header, expected):
    assert parse_range(header, 1000) == expected


def test_content_range():
    assert ServePlan("t", None, 1000, 400).content_range() == "bytes 400-999/1000"
    assert ServePlan("t", None, 1000, 1000).content_range() == "bytes */1000"


class TestRangeServing:
    """Test serving stored files from an offset"""

    @pytest.fixture
    def serving(self, registry):
        return RangeServingEngine(registry, buffer_size=1000)

    @pytest.fixture
    def sink(self):
        received = bytearray()

        async def _sink(block: bytes):
            received.extend(block)

        _sink.received = received
        return _sink

    @pytest.mark.asyncio
    async def test_full_file(self, serving, registry, make_file, sink):
        path, data = make_file(size=10_500)

        sent = await serving.serve("d1", path, None, sink)
        assert sent == len(data)
        assert bytes(sink.received) == data

        snapshot = registry.snapshot("d1")
        assert snapshot.state == TransferPhase.COMPLETED
        assert snapshot.bytes_written == len(data)
        assert snapshot.resume_offset == 0

    @pytest.mark.asyncio
    async def test_resume_from_offset(self, serving, registry, make_file, sink):
        path, data = make_file(size=10_500)

        sent = await serving.serve("d1", path, "bytes=4096-", sink)
        assert sent == len(data) - 4096
        assert bytes(sink.received) == data[4096:]

        snapshot = registry.snapshot("d1")
        assert snapshot.resume_offset == 4096
        assert snapshot.bytes_written == len(data)

    @pytest.mark.asyncio
    async def test_unsupported_range_sends_everything(self, serving, make_file, sink):
        path, data = make_file(size=3000)
        await serving.serve("d1", path, "bytes=100-200", sink)
        assert bytes(sink.received) == data

    @pytest.mark.asyncio
    async def test_offset_at_end(self, serving, registry, make_file, sink):
        path, data = make_file(size=3000)

        assert await serving.serve("d1", path, "bytes=3000-", sink) == 0
        assert registry.snapshot("d1").state == TransferPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_offset_clamped(self, serving, make_file, sink):
        path, _ = make_file(size=3000)
        assert await serving.serve("d1", path, "bytes=99999-", sink) == 0

    @pytest.mark.asyncio
    async def test_progress_tracks_blocks(self, serving, registry, make_file):
        path, _ = make_file(size=2500)
        plan = serving.prepare("d1", path)

        seen = []
        async for block in serving.iter_plan(plan):
            seen.append(registry.get_bytes_written("d1"))
        assert seen == [0, 1000, 2000]
        assert registry.get_bytes_written("d1") == 2500

    @pytest.mark.asyncio
    async def test_disconnect_fails_download(self, serving, registry, make_file):
        path, _ = make_file(size=2500)
        plan = serving.prepare("d1", path)

        blocks = serving.iter_plan(plan)
        assert len(await blocks.__anext__()) == 1000
        await blocks.aclose()

        snapshot = registry.snapshot("d1")
        assert snapshot.state == TransferPhase.FAILED
        assert "disconnected" in snapshot.error

    def test_generated_id(self, serving, registry, make_file):
        path, _ = make_file(name="doc.txt", size=10)
        plan = serving.prepare(None, path, checksum="abcdef0123456789")
        assert plan.transfer_id.startswith("doc.txt-abcdef01-")
        assert plan.transfer_id in registry

    def test_missing_file(self, serving, registry, temp_dir):
        with pytest.raises(InvalidRequestError):
            serving.prepare("d1", temp_dir / "missing.bin")
        assert "d1" not in registry
