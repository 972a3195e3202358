"""Tests for the REST API"""

import hashlib
import os

import pytest

from filerelay.crypto.cipher import StreamCipher


def upload_headers(transfer_id: str, name: str, total: int, **extra) -> dict:
    headers = {
        'X-Transfer-Id': transfer_id,
        'X-File-Name': name,
        'X-Total-Bytes': str(total),
    }
    headers.update(extra)
    return headers


class TestHandshake:
    """Test the node info endpoint"""

    @pytest.mark.asyncio
    async def test_root(self, api_client):
        response = await api_client.get("/")
        assert response.status_code == 200
        info = response.json()
        assert info['status'] == 'running'
        assert info['protocol'] == 'HTTP'
        assert info['chunkSize'] == 256 * 1024


class TestUpload:
    """Test POST /upload in both modes"""

    @pytest.mark.asyncio
    async def test_stream_upload(self, api_client, node):
        data = os.urandom(40_000)
        response = await api_client.post(
            "/upload", content=data,
            headers=upload_headers("s1", "a.bin", len(data),
                                   **{'X-Checksum': hashlib.sha256(data).hexdigest()}),
        )
        assert response.status_code == 200
        body = response.json()
        assert body['result'] == 'COMPLETED'
        assert body['status']['bytesWritten'] == len(data)
        assert (node.received_dir / "a.bin").read_bytes() == data

    @pytest.mark.asyncio
    async def test_fields_from_query_string(self, api_client, node):
        response = await api_client.post(
            "/upload", params={'transferId': 'q1', 'fileName': 'hello.txt', 'totalBytes': 5},
            content=b"hello",
        )
        assert response.status_code == 200
        assert (node.received_dir / "hello.txt").read_bytes() == b"hello"

    @pytest.mark.asyncio
    async def test_chunk_upload(self, api_client, node):
        headers = upload_headers("c1", "parts.txt", 10, **{'X-Total-Chunks': '2'})

        first = await api_client.post("/upload", content=b"hello",
                                      headers={**headers, 'X-Chunk-Index': '0'})
        assert first.status_code == 200
        assert first.json()['result'] == 'CHUNK_STORED'
        assert first.json()['status']['missingChunks'] == [1]

        second = await api_client.post("/upload", content=b"world",
                                       headers={**headers, 'X-Chunk-Index': '1'})
        assert second.json()['result'] == 'MERGED'
        assert second.json()['status']['state'] == 'COMPLETED'
        assert (node.received_dir / "parts.txt").read_bytes() == b"helloworld"

    @pytest.mark.asyncio
    async def test_encrypted_with_node_password(self, api_client, node):
        node.config.encryption_password = "p1"
        data = os.urandom(9_999)
        body = StreamCipher().encrypt_buffer(data, "p1")

        response = await api_client.post(
            "/upload", content=body,
            headers=upload_headers("e1", "secret.bin", len(data),
                                   **{'X-Encryption-Enabled': 'true'}),
        )
        assert response.status_code == 200
        assert response.json()['status']['aesEnabled'] is True
        assert (node.received_dir / "secret.bin").read_bytes() == data

    @pytest.mark.asyncio
    async def test_encryption_without_password(self, api_client):
        response = await api_client.post(
            "/upload", content=b"x" * 32,
            headers=upload_headers("e1", "secret.bin", 16, **{'X-Encryption-Enabled': 'true'}),
        )
        assert response.status_code == 400
        assert response.json()['detail']['error'] == 'InvalidRequestError'

    @pytest.mark.asyncio
    async def test_undecryptable_chunk(self, api_client, node):
        response = await api_client.post(
            "/upload", content=b"tiny",
            headers=upload_headers("e2", "secret.bin", 1000,
                                   **{'X-Chunk-Index': '0', 'X-AES-Password': 'p1'}),
        )
        assert response.status_code == 400
        assert response.json()['detail']['error'] == 'DecryptionError'
        assert node.status("e2").state.value == 'FAILED'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [
        {'X-Transfer-Id': 't1', 'X-File-Name': 'a.bin'},
        {'X-Transfer-Id': 't1', 'X-File-Name': 'a.bin', 'X-Total-Bytes': 'lots'},
        {'X-Transfer-Id': 't1', 'X-File-Name': '../a.bin', 'X-Total-Bytes': '4'},
        {'X-File-Name': 'a.bin', 'X-Total-Bytes': '4'},
    ])
    async def test_invalid_input(self, api_client, node, headers):
        response = await api_client.post("/upload", content=b"abcd", headers=headers)
        assert response.status_code == 400
        assert response.json()['detail']['error'] == 'InvalidRequestError'
        assert list(node.received_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, api_client, node):
        response = await api_client.post(
            "/upload", content=b"payload",
            headers=upload_headers("m1", "bad.bin", 7, **{'X-Checksum': "0" * 64}),
        )
        assert response.status_code == 409
        assert response.json()['detail']['error'] == 'ChecksumMismatchError'
        assert not (node.received_dir / "bad.bin").exists()

        # Terminal states are sticky: the sender resets to a fresh id instead
        status = (await api_client.get("/status", params={'transferId': 'm1'})).json()
        assert status['state'] == 'COMPLETED'
        assert 'Checksum mismatch' in status['error']

    @pytest.mark.asyncio
    async def test_resume_offset_disagreement(self, api_client, node):
        (node.received_dir / "part.bin").write_bytes(b"x" * 100)
        response = await api_client.post(
            "/upload", content=b"y" * 50,
            headers=upload_headers("r1", "part.bin", 200, **{'X-Resume-Offset': '150'}),
        )
        assert response.status_code == 400
        assert (node.received_dir / "part.bin").read_bytes() == b"x" * 100


class TestStatus:
    """Test GET /status"""

    @pytest.mark.asyncio
    async def test_no_transfers(self, api_client):
        response = await api_client.get("/status")
        assert response.status_code == 404
        assert response.json()['detail']['error'] == 'TransferNotFoundError'

    @pytest.mark.asyncio
    async def test_latest_by_default(self, api_client):
        await api_client.post("/upload", content=b"one",
                              headers=upload_headers("a1", "one.txt", 3))
        await api_client.post("/upload", content=b"two",
                              headers=upload_headers("a2", "two.txt", 3))

        status = (await api_client.get("/status")).json()
        assert status['transferId'] == 'a2'
        assert status['fileName'] == 'two.txt'
        assert status['progressPercent'] == 100.0
        assert status['resumable'] is False


class TestReset:
    """Test POST /transfers/{id}/reset"""

    @pytest.mark.asyncio
    async def test_reset_failed_transfer(self, api_client, node):
        await api_client.post("/upload", content=b"payload",
                              headers=upload_headers("m1", "bad.bin", 7,
                                                     **{'X-Checksum': "0" * 64}))

        response = await api_client.post("/transfers/m1/reset")
        assert response.status_code == 200
        new_id = response.json()['transferId']
        assert new_id != 'm1'
        assert response.json()['previousTransferId'] == 'm1'

        status = (await api_client.get("/status", params={'transferId': new_id})).json()
        assert status['state'] == 'PENDING'

        retry = await api_client.post(
            "/upload", content=b"payload",
            headers=upload_headers(new_id, "bad.bin", 7,
                                   **{'X-Checksum': hashlib.sha256(b"payload").hexdigest()}),
        )
        assert retry.json()['result'] == 'COMPLETED'

    @pytest.mark.asyncio
    async def test_reset_discards_chunks(self, api_client, node):
        await api_client.post(
            "/upload", content=b"hello",
            headers=upload_headers("c1", "parts.txt", 10,
                                   **{'X-Chunk-Index': '0', 'X-Total-Chunks': '2'}),
        )
        assert node.ingest.chunk_dir("c1").exists()

        await api_client.post("/transfers/c1/reset")
        assert not node.ingest.chunk_dir("c1").exists()

    @pytest.mark.asyncio
    async def test_reset_unknown(self, api_client):
        response = await api_client.post("/transfers/nope/reset")
        assert response.status_code == 404


class TestDownload:
    """Test GET /download"""

    @pytest.fixture
    def stored(self, node):
        data = os.urandom(20_000)
        (node.received_dir / "doc.bin").write_bytes(data)
        return data

    @pytest.mark.asyncio
    async def test_full_download(self, api_client, stored):
        response = await api_client.get("/download", params={'name': 'doc.bin'})
        assert response.status_code == 200
        assert response.content == stored
        assert response.headers['accept-ranges'] == 'bytes'
        assert response.headers['x-file-checksum-sha256'] == hashlib.sha256(stored).hexdigest()

    @pytest.mark.asyncio
    async def test_resumed_download(self, api_client, node, stored):
        response = await api_client.get("/download", params={'name': 'doc.bin'},
                                        headers={'Range': 'bytes=5000-'})
        assert response.status_code == 206
        assert response.content == stored[5000:]
        assert response.headers['content-range'] == f"bytes 5000-19999/{len(stored)}"

        snapshot = node.status(response.headers['x-transfer-id'])
        assert snapshot.resume_offset == 5000
        assert snapshot.state.value == 'COMPLETED'

    @pytest.mark.asyncio
    async def test_bounded_range_sends_whole_file(self, api_client, stored):
        response = await api_client.get("/download", params={'name': 'doc.bin'},
                                        headers={'Range': 'bytes=0-99'})
        assert response.status_code == 200
        assert response.content == stored

    @pytest.mark.asyncio
    async def test_abandoned_download_is_failed(self, node, stored):
        plan, _ = await node.open_download("doc.bin", transfer_id="dl1")

        blocks = node.iter_download(plan)
        await blocks.__anext__()
        await blocks.aclose()

        assert node.status("dl1").state.value == 'FAILED'
        rows = await node.history(state='FAILED')
        assert [row['transfer_id'] for row in rows] == ['dl1']

    @pytest.mark.asyncio
    async def test_missing_file(self, api_client):
        response = await api_client.get("/download", params={'name': 'nope.bin'})
        assert response.status_code == 404


class TestHistory:
    """Test GET /transfers/history"""

    @pytest.mark.asyncio
    async def test_terminal_transfers_recorded(self, api_client):
        await api_client.post("/upload", content=b"one",
                              headers=upload_headers("h1", "one.txt", 3))
        await api_client.post("/upload", content=b"pay",
                              headers=upload_headers("h2", "short.bin", 7))

        rows = (await api_client.get("/transfers/history")).json()['transfers']
        by_id = {row['transfer_id']: row for row in rows}
        assert by_id['h1']['state'] == 'COMPLETED'
        assert by_id['h2']['state'] == 'FAILED'

        failed = (await api_client.get("/transfers/history",
                                       params={'state': 'FAILED'})).json()['transfers']
        assert [row['transfer_id'] for row in failed] == ['h2']
