"""Tests for the HTTP client and the sender/receiver orchestrators"""

import hashlib
import zipfile

import pytest
import pytest_asyncio

from conftest import feed
from filerelay.crypto.cipher import StreamCipher
from filerelay.errors import (
    ChecksumMismatchError, DecryptionError, IncompleteTransferError,
    InvalidRequestError, StorageError, TransferCancelledError, TransferNotFoundError,
    TransferStateError,
)
from filerelay.transfer.methods import (
    HttpTransferMethod, TransferMethod, TransferMode, create_transfer_method,
)
from filerelay.transfer.orchestrator import ReceiverOrchestrator, SenderOrchestrator

CHUNK = 256 * 1024


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest_asyncio.fixture
async def method(transport):
    method = create_transfer_method("HTTP", "testserver", 80, transport=transport)
    yield method
    await method.close()


@pytest.fixture
def sender(method, temp_dir):
    return SenderOrchestrator(method, temp_dir / "outgoing", retry_delay=0.0)


@pytest.fixture
def receiver(method):
    return ReceiverOrchestrator(method, retry_delay=0.0)


class TestCreateTransferMethod:
    """Test transport selection"""

    def test_http(self):
        method = create_transfer_method("http", "127.0.0.1", 8080)
        assert isinstance(method, HttpTransferMethod)
        assert method.mode == TransferMode.HTTP

    def test_zerotier_reuses_http(self):
        method = create_transfer_method(TransferMode.ZEROTIER, "10.147.17.5", 8080)
        assert isinstance(method, HttpTransferMethod)
        assert method.mode == TransferMode.ZEROTIER
        assert method.client.base_url == "http://10.147.17.5:8080"

    def test_unsupported(self):
        with pytest.raises(InvalidRequestError):
            create_transfer_method("S3", "bucket", 443)


class TestHttpClient:
    """Test the HTTP client against a live app"""

    @pytest.mark.asyncio
    async def test_stream_upload_resumes_from_receiver_offset(self, method, node, make_file):
        path, data = make_file(size=120_000)
        checksum = sha256(data)

        with pytest.raises(IncompleteTransferError):
            await node.receive_stream("r1", path.name, len(data), feed(data[:50_000]),
                                      checksum=checksum)
        assert await method.resume_offset("r1") == 50_000

        result = await method.client.upload_stream(path, "r1", checksum=checksum)
        assert result['result'] == 'COMPLETED'
        assert result['status']['resumeOffset'] == 50_000
        assert (node.received_dir / path.name).read_bytes() == data

    @pytest.mark.asyncio
    async def test_encrypted_stream_resume(self, method, node, make_file):
        path, data = make_file(size=90_000)

        with pytest.raises(IncompleteTransferError):
            await node.receive_stream("r2", path.name, len(data), feed(data[:30_000]))

        result = await method.client.upload_stream(path, "r2", password="p1")
        assert result['status']['aesEnabled'] is True
        assert (node.received_dir / path.name).read_bytes() == data

    @pytest.mark.asyncio
    async def test_chunk_upload_skips_received(self, method, node, make_file, monkeypatch):
        path, data = make_file(size=4 * CHUNK)
        for index in (0, 2):
            await node.receive_chunk("c1", path.name, index, len(data),
                                     data[index * CHUNK:(index + 1) * CHUNK], total_chunks=4)

        seen = []
        original = node.ingest.ingest_chunk

        async def spy(transfer_id, file_name, chunk_index, *args, **kwargs):
            seen.append(chunk_index)
            return await original(transfer_id, file_name, chunk_index, *args, **kwargs)

        monkeypatch.setattr(node.ingest, "ingest_chunk", spy)

        result = await method.client.upload_chunks(path, "c1", checksum=sha256(data))
        assert seen == [1, 3]
        assert result['result'] == 'MERGED'
        assert (node.received_dir / path.name).read_bytes() == data

    @pytest.mark.asyncio
    async def test_download_resumes_local_copy(self, method, node, temp_dir):
        data = bytes(range(256)) * 100
        (node.received_dir / "doc.bin").write_bytes(data)
        dest = temp_dir / "downloads"
        dest.mkdir()
        (dest / "doc.bin").write_bytes(data[:1000])

        path, checksum = await method.receive("doc.bin", dest)
        assert path.read_bytes() == data
        assert checksum == sha256(data)
        assert node.registry.snapshot().resume_offset == 1000

    @pytest.mark.asyncio
    async def test_status_of_unknown_transfer(self, method):
        assert await method.status("unknown") is None
        assert await method.resume_offset("unknown") == 0

    @pytest.mark.asyncio
    async def test_errors_map_to_exceptions(self, method, make_file):
        with pytest.raises(TransferNotFoundError):
            await method.reset("unknown")

        path, _ = make_file(size=1000)
        with pytest.raises(ChecksumMismatchError):
            await method.send(path, "m1", checksum="0" * 64)


class TestSender:
    """Test SenderOrchestrator end to end"""

    @pytest.mark.asyncio
    async def test_stream_send(self, sender, node, make_file):
        path, data = make_file(size=300_000)

        result = await sender.send(path)
        assert result.checksum == sha256(data)
        assert result.checksum_attempts == 1
        assert result.status['state'] == 'COMPLETED'
        assert result.transfer_id.startswith(f"{path.name}-{sha256(data)[:8]}-")
        assert (node.received_dir / path.name).read_bytes() == data

    @pytest.mark.asyncio
    async def test_chunked_encrypted_send(self, sender, node, make_file):
        path, data = make_file(size=2 * CHUNK + 123)

        result = await sender.send(path, chunked=True, password="p1")
        assert result.status['state'] == 'COMPLETED'
        assert result.status['aesEnabled'] is True
        assert (node.received_dir / path.name).read_bytes() == data

    @pytest.mark.asyncio
    async def test_encrypted_stream_send(self, sender, node, make_file):
        path, data = make_file(size=70_001)
        await sender.send(path, password="p1")
        assert (node.received_dir / path.name).read_bytes() == data

    @pytest.mark.asyncio
    async def test_sealed_send(self, sender, node, make_file, temp_dir):
        path, data = make_file(size=50_000)

        result = await sender.send(path, password="p1", seal=True)
        stored = node.received_dir / f"{path.name}.enc"
        assert result.file_name == stored.name
        assert result.checksum == sha256(stored.read_bytes())
        assert result.status['aesEnabled'] is False

        plain = temp_dir / "plain.bin"
        await StreamCipher().decrypt_file(stored, plain, "p1")
        assert plain.read_bytes() == data

    @pytest.mark.asyncio
    async def test_compressed_send(self, sender, node, make_file):
        path, data = make_file(name="notes.txt", data=b"hello world\n" * 5000)

        await sender.send(path, compress=True)
        with zipfile.ZipFile(node.received_dir / "notes.txt.zip") as zf:
            assert zf.read("notes.txt") == data

    @pytest.mark.asyncio
    async def test_empty_file_chunked(self, sender, node, make_file):
        path, _ = make_file(name="empty.bin", data=b"")

        result = await sender.send(path, chunked=True)
        assert result.status['state'] == 'COMPLETED'
        assert (node.received_dir / "empty.bin").read_bytes() == b""

    @pytest.mark.asyncio
    async def test_missing_file(self, sender, temp_dir):
        with pytest.raises(InvalidRequestError):
            await sender.send(temp_dir / "missing.bin")


class FakeMethod(TransferMethod):
    """Scripted transport for driving the sender loop"""

    mode = TransferMode.HTTP

    def __init__(self, failures=()):
        self.failures = list(failures)
        self.sent = []
        self.resets = []
        self.checksums = {}

    async def handshake(self):
        return {'name': 'fake'}

    async def send(self, path, transfer_id, checksum=None, password=None, chunked=False):
        self.sent.append(transfer_id)
        self.checksums[transfer_id] = checksum
        if self.failures:
            raise self.failures.pop(0)
        return {'result': 'COMPLETED'}

    async def receive(self, name, dest_dir, transfer_id=None):
        raise NotImplementedError

    async def resume_offset(self, transfer_id):
        return 0

    async def status(self, transfer_id):
        return {'state': 'COMPLETED', 'checksum': self.checksums.get(transfer_id)}

    async def reset(self, transfer_id):
        self.resets.append(transfer_id)
        return f"{transfer_id}-r{len(self.resets)}"


class TestSenderRetries:
    """Test the sender's retry and checksum-reset loop"""

    def make_sender(self, method, temp_dir, **kwargs):
        return SenderOrchestrator(method, temp_dir / "outgoing", retry_delay=0.0, **kwargs)

    @pytest.mark.asyncio
    async def test_transient_failure_retries_same_id(self, make_file, temp_dir):
        method = FakeMethod([StorageError("connection reset")])
        path, _ = make_file()

        result = await self.make_sender(method, temp_dir).send(path)
        assert method.sent == [result.transfer_id, result.transfer_id]
        assert method.resets == []

    @pytest.mark.asyncio
    async def test_checksum_rejection_resets_id(self, make_file, temp_dir):
        method = FakeMethod([ChecksumMismatchError("bad"), ChecksumMismatchError("bad")])
        path, _ = make_file()

        result = await self.make_sender(method, temp_dir).send(path)
        assert result.checksum_attempts == 3
        assert len(method.resets) == 2
        assert len(set(method.sent)) == 3
        assert result.transfer_id == method.sent[-1]

    @pytest.mark.asyncio
    async def test_checksum_rejection_is_bounded(self, make_file, temp_dir):
        method = FakeMethod([ChecksumMismatchError("bad")] * 10)
        path, _ = make_file()

        with pytest.raises(ChecksumMismatchError) as exc_info:
            await self.make_sender(method, temp_dir, checksum_max_attempts=3).send(path)
        assert exc_info.value.attempts == 4
        assert len(method.sent) == 4

    @pytest.mark.asyncio
    async def test_decryption_error_not_retried(self, make_file, temp_dir):
        method = FakeMethod([DecryptionError("bad padding")])
        path, _ = make_file()

        with pytest.raises(DecryptionError):
            await self.make_sender(method, temp_dir).send(path, password="p1")
        assert len(method.sent) == 1

    @pytest.mark.asyncio
    async def test_receiver_not_completed(self, make_file, temp_dir):
        method = FakeMethod()

        async def failed_status(transfer_id):
            return {'state': 'FAILED', 'error': 'disk full'}

        method.status = failed_status
        path, _ = make_file()

        with pytest.raises(TransferStateError, match="disk full"):
            await self.make_sender(method, temp_dir).send(path)

    @pytest.mark.asyncio
    async def test_cancel_before_send(self, make_file, temp_dir):
        method = FakeMethod()
        sender = self.make_sender(method, temp_dir)
        sender.cancel()
        path, _ = make_file()

        with pytest.raises(TransferCancelledError):
            await sender.send(path)
        assert method.sent == []


class TestReceiver:
    """Test ReceiverOrchestrator end to end"""

    @pytest.mark.asyncio
    async def test_receive(self, receiver, node, temp_dir):
        data = bytes(range(256)) * 400
        (node.received_dir / "doc.bin").write_bytes(data)

        result = await receiver.receive("doc.bin", temp_dir / "downloads")
        assert result.path.read_bytes() == data
        assert result.checksum == sha256(data)
        assert result.decrypted_path is None

    @pytest.mark.asyncio
    async def test_expected_checksum_mismatch(self, receiver, node, temp_dir):
        (node.received_dir / "doc.bin").write_bytes(b"served content")

        with pytest.raises(ChecksumMismatchError) as exc_info:
            await receiver.receive("doc.bin", temp_dir / "downloads",
                                   expected_checksum="0" * 64)
        assert exc_info.value.attempts == 3
        assert not (temp_dir / "downloads" / "doc.bin").exists()

    @pytest.mark.asyncio
    async def test_sealed_receive(self, receiver, node, make_file, temp_dir):
        source, data = make_file(name="doc.txt", size=10_000)
        await StreamCipher().encrypt_file(source, node.received_dir / "doc.txt.enc", "p1")

        result = await receiver.receive("doc.txt.enc", temp_dir / "downloads", password="p1")
        assert result.decrypted_path == temp_dir / "downloads" / "doc.txt"
        assert result.decrypted_path.read_bytes() == data

    @pytest.mark.asyncio
    async def test_missing_remote_file(self, receiver, temp_dir):
        with pytest.raises(TransferNotFoundError):
            await receiver.receive("nope.bin", temp_dir / "downloads")
