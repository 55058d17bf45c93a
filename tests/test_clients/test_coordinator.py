"""Tests for CoordinatorClient.

Test Coverage:
- Task acquisition (200 task, non-200 no work, protocol violations, network errors)
- Concurrency hint header
- Streaming artifact upload (two-part body, status handling, producer failures)
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from himawari_worker.clients.coordinator import THREADS_HEADER, CoordinatorClient
from himawari_worker.exceptions import (
    ArtifactIOError,
    NoWorkAvailable,
    ProtocolViolation,
    TransportError,
)


class TestAcquireTask:
    """Tests for CoordinatorClient.acquire_task."""

    @pytest.mark.asyncio
    async def test_acquire_task_success(self, coordinator, task_payload):
        coordinator.queue_task(task_payload)
        client = coordinator.client(threads_hint=4)

        task = await client.acquire_task()

        assert task.id == "abc"
        assert task.arguments == ("-i", "in.mp4")
        assert coordinator.acquire_headers[0][THREADS_HEADER] == "4"
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [204, 404, 500, 503])
    async def test_non_200_is_no_work(self, coordinator, task_payload, status):
        coordinator.queue_task(task_payload, status=status)
        client = coordinator.client()

        with pytest.raises(NoWorkAvailable) as exc_info:
            await client.acquire_task()

        assert exc_info.value.status_code == status
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_id_is_protocol_violation(self, coordinator, task_payload):
        task_payload["Id"] = ""
        coordinator.queue_task(task_payload)
        client = coordinator.client()

        with pytest.raises(ProtocolViolation):
            await client.acquire_task()
        await client.close()

    @pytest.mark.asyncio
    async def test_garbage_body_is_protocol_violation(self, coordinator, quiet_log):
        coordinator.queue_raw(b"<html>oops</html>")
        client = coordinator.client(logger=quiet_log)

        with pytest.raises(ProtocolViolation):
            await client.acquire_task()

        quiet_log.debug.assert_called_once()
        assert quiet_log.debug.call_args.args[0] == "acquire_response_rejected"
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = CoordinatorClient("coordinator.test", transport=httpx.MockTransport(refuse))

        with pytest.raises(TransportError, match="ConnectError"):
            await client.acquire_task()
        await client.close()

    @pytest.mark.asyncio
    async def test_acquire_uses_short_timeout(self, task_payload):
        client = CoordinatorClient("coordinator.test", acquire_timeout=7.0, upload_timeout=99.0)
        response = httpx.Response(
            200,
            content=json.dumps(task_payload).encode(),
            request=httpx.Request("GET", "http://coordinator.test/task"),
        )

        with patch.object(client.client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = response
            await client.acquire_task()

        assert mock_request.call_args.kwargs["timeout"] == 7.0
        assert mock_request.call_args.args == ("GET", "/task")
        await client.close()

    @pytest.mark.asyncio
    async def test_acquire_deadline_is_transport_error(self):
        async def hang(request):
            await asyncio.sleep(10)
            return httpx.Response(200)

        client = CoordinatorClient(
            "coordinator.test", acquire_timeout=0.05, transport=httpx.MockTransport(hang)
        )

        with pytest.raises(TransportError, match="timed out"):
            await client.acquire_task()
        await client.close()


def parse_parts(body: bytes, boundary: str) -> list[bytes]:
    """Split a multipart body into raw parts (headers + content)."""
    delimiter = b"--" + boundary.encode()
    assert body.endswith(delimiter + b"--\r\n")
    chunks = body.split(delimiter)
    # chunks[0] is the empty preamble, chunks[-1] is "--\r\n"
    return [chunk[2:-2] for chunk in chunks[1:-1]]


class TestUploadArtifact:
    """Tests for CoordinatorClient.upload_artifact."""

    @pytest.mark.asyncio
    async def test_upload_sends_two_parts_in_order(self, coordinator, sample_task, tmp_path):
        artifact = tmp_path / "abc.mp4"
        artifact.write_bytes(b"\x00\x01video-bytes" * 5000)
        client = coordinator.client()

        sent = await client.upload_artifact(sample_task, artifact, chunk_size=1024)

        assert sent == artifact.stat().st_size
        submission = coordinator.submissions[0]
        content_type = submission["headers"]["content-type"]
        assert content_type.startswith("multipart/form-data; boundary=")
        boundary = content_type.split("boundary=")[1]

        field, file_part = parse_parts(submission["body"], boundary)
        assert field == b'Content-Disposition: form-data; name="uuid"\r\n\r\nabc'
        headers, content = file_part.split(b"\r\n\r\n", 1)
        assert b'name="videodata"; filename="abc.mp4"' in headers
        assert b"Content-Type: application/octet-stream" in headers
        assert content == artifact.read_bytes()
        await client.close()

    @pytest.mark.asyncio
    async def test_upload_bad_status_is_transport_error(self, coordinator, sample_task, tmp_path):
        artifact = tmp_path / "abc.mp4"
        artifact.write_bytes(b"video")
        coordinator.submit_status = 503
        client = coordinator.client()

        with pytest.raises(TransportError, match="bad status: 503 Service Unavailable") as exc_info:
            await client.upload_artifact(sample_task, artifact)

        assert exc_info.value.status_code == 503
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_artifact_fails_upload(self, coordinator, sample_task, tmp_path):
        client = coordinator.client()

        with pytest.raises(ArtifactIOError, match="cannot open artifact"):
            await client.upload_artifact(sample_task, tmp_path / "missing.mp4")

        assert coordinator.submissions == []
        await client.close()

    @pytest.mark.asyncio
    async def test_early_response_is_not_silent_truncation(self, sample_task, tmp_path):
        artifact = tmp_path / "abc.mp4"
        artifact.write_bytes(b"x" * 200_000)

        async def answer_without_reading(request):
            return httpx.Response(200)

        class EarlyTransport(httpx.AsyncBaseTransport):
            async def handle_async_request(self, request):
                # Read one chunk of the body, then answer
                async for _ in request.stream:
                    break
                return await answer_without_reading(request)

        client = CoordinatorClient("coordinator.test", transport=EarlyTransport())

        with pytest.raises(ArtifactIOError, match="fully sent"):
            await client.upload_artifact(sample_task, artifact, chunk_size=1024)
        await client.close()

    @pytest.mark.asyncio
    async def test_upload_uses_long_timeout(self, sample_task, tmp_path):
        artifact = tmp_path / "abc.mp4"
        artifact.write_bytes(b"video")
        seen = {}

        async def record(request):
            seen["timeout"] = request.extensions.get("timeout")
            await request.aread()
            return httpx.Response(200)

        client = CoordinatorClient(
            "coordinator.test",
            acquire_timeout=7.0,
            upload_timeout=99.0,
            transport=httpx.MockTransport(record),
        )

        await client.upload_artifact(sample_task, artifact)

        assert seen["timeout"]["read"] == 99.0
        await client.close()
